from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .batching import keepalive
from .context import RunContext
from .errors import wrap_operation
from .fusion import FusionService
from .models import AccountOutput, AccountSchema

logger = logging.getLogger(__name__)


@dataclass
class ListAccountsResult:
    outputs: List[AccountOutput] = field(default_factory=list)
    reset: bool = False
    pending_forms: int = 0
    forms_created: int = 0
    failures: int = 0


async def list_accounts(
    context: RunContext,
    schema: Optional[AccountSchema] = None,
    send: Optional[Callable[[AccountOutput], object]] = None,
) -> ListAccountsResult:
    """Run every reconciliation phase and emit the resulting fusion accounts.

    ``send`` is called once per emitted account. Any failure is re-raised as
    "Failed to list accounts: ..." after the process lock is released.
    """
    result = ListAccountsResult()
    sources = context.sources
    with wrap_operation("list accounts"):
        await sources.fetch_sources()
        # raises (and resets the flag) when another run holds the lock
        sources.set_process_lock()
        try:
            async with keepalive(context.settings.processing.keepalive_seconds, context.keepalive):
                if sources.reset_requested():
                    await _reset(context)
                    result.reset = True
                    return result
                await _run(context, schema, send, result)
        finally:
            sources.release_process_lock()
    return result


async def _reset(context: RunContext) -> None:
    logger.info("Reset requested; deleting review forms and clearing state")
    await context.forms.delete_existing_forms()
    context.sources.disable_reset()
    context.sources.reset_batch_counts()
    context.attributes.reset_state()


async def _run(
    context: RunContext,
    schema: Optional[AccountSchema],
    send: Optional[Callable[[AccountOutput], object]],
    result: ListAccountsResult,
) -> None:
    sources = context.sources
    attributes = context.attributes
    fusion = FusionService(context)

    await sources.aggregate_managed_sources()
    sources.load_batch_counts()
    attributes.load_state()
    attributes.initialize_counters()

    abort = asyncio.Event()
    records, identities, queue, _sender = await asyncio.gather(
        sources.fetch_fusion_accounts(),
        sources.fetch_identities(),
        sources.fetch_managed_accounts(abort),
        context.messaging.fetch_sender(),
    )

    await context.forms.fetch_form_data(queue)
    await fusion.process_fusion_accounts(records, identities, queue)
    await fusion.process_identities(identities, queue)
    await fusion.process_decisions()
    await fusion.process_managed_accounts(queue)
    fusion.reconcile_pending_form_state()
    await fusion.refresh_unique_attributes()

    if context.report is not None:
        for failure in attributes.failures:
            context.report.add_failure(failure.account, failure.attribute, failure.message)
        logger.info("Fusion report: %s", context.report.counts())

    attributes.save_state()
    sources.save_batch_counts()
    await context.forms.clean_up_forms()

    outputs = fusion.outputs(schema)
    for output in outputs:
        if send is not None:
            sent = send(output)
            if asyncio.iscoroutine(sent):
                await sent
    result.outputs = outputs
    result.pending_forms = len({url for urls in context.forms.pending_review_urls.values() for url in urls})
    result.forms_created = len(context.forms.created_forms)
    result.failures = len(attributes.failures)
    logger.info(
        "Emitted %d fusion account(s); %d review form(s) created; %d attribute failure(s)",
        len(outputs),
        result.forms_created,
        result.failures,
    )
    fusion.clear()
