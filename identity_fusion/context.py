from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .attributes import AttributeService
from .config import Settings
from .forms import FormService
from .messaging import MessagingService
from .platform import AccountDirectory, FormsClient, IdentityDirectory, Messenger
from .report import FusionReport
from .scoring import MatchingEngine
from .sources import SourceService
from .state import StateStore

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Everything one run needs, built once and passed explicitly."""

    settings: Settings
    state: StateStore
    sources: SourceService
    forms: FormService
    messaging: MessagingService
    attributes: AttributeService
    engine: MatchingEngine
    report: Optional[FusionReport] = None
    keepalive: Optional[Callable[[str], Any]] = None

    @classmethod
    def create(
        cls,
        settings: Settings,
        *,
        accounts: AccountDirectory,
        identities: IdentityDirectory,
        forms: FormsClient,
        messenger: Messenger,
        state: StateStore,
        report: bool = False,
        keepalive: Optional[Callable[[str], Any]] = None,
    ) -> "RunContext":
        report_mode = report or settings.review.report_on_aggregation
        messaging = MessagingService(messenger)
        context = cls(
            settings=settings,
            state=state,
            sources=SourceService(accounts, identities, settings, state),
            forms=FormService(
                forms,
                settings.review,
                settings.retry,
                messaging,
                owner_id=settings.platform.owner_id,
                created_by=settings.platform.fusion_source_id,
            ),
            messaging=messaging,
            attributes=AttributeService(
                settings.attributes,
                state,
                settings.platform.fusion_source_id,
                settings.source_names(),
            ),
            engine=MatchingEngine(settings.matching, report_mode=report_mode),
            report=FusionReport() if report_mode else None,
            keepalive=keepalive,
        )
        logger.debug("Run context ready for fusion source %s (report=%s)", settings.platform.fusion_source_id, report_mode)
        return context
