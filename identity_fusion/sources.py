from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from .config import Settings, SourceSettings
from .errors import ProcessLockError, assert_that, soft_assert
from .models import FusionAccountRecord, IdentityRecord, ManagedAccount, Source
from .platform import AccountDirectory, IdentityDirectory
from .retry import run_with_retries
from .state import BATCH_CUMULATIVE_COUNT, PROCESS_LOCK, RESET, RESET_CONSUMED, StateStore
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def paginate(
    fetch_page: Callable[[int, int], Awaitable[List[T]]],
    *,
    page_size: int,
    limit: Optional[int] = None,
    abort: Optional[asyncio.Event] = None,
) -> List[T]:
    """Collect pages until a short page, ``limit`` items, or ``abort`` is set."""
    items: List[T] = []
    offset = 0
    while True:
        if abort is not None and abort.is_set():
            logger.debug("Pagination aborted at offset %d", offset)
            break
        size = page_size if limit is None else min(page_size, limit - len(items))
        if size <= 0:
            break
        page = await fetch_page(offset, size)
        items.extend(page)
        if len(page) < size:
            break
        offset += len(page)
    return items


class SourceService:
    """Managed sources, the process lock and the fetches that feed a run."""

    def __init__(
        self,
        accounts: AccountDirectory,
        identities: IdentityDirectory,
        settings: Settings,
        state: StateStore,
    ) -> None:
        self.accounts = accounts
        self.identities = identities
        self.settings = settings
        self.state = state
        self.fusion_source_id = settings.platform.fusion_source_id
        self.sources: Dict[str, Source] = {}
        self.batch_counts: Dict[str, int] = {}
        self.fetched_counts: Dict[str, int] = {}

    async def _call(self, label: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await run_with_retries(fn, self.settings.retry, label=label)

    # sources

    async def fetch_sources(self) -> List[Source]:
        available = await self._call("list sources", self.accounts.list_sources)
        by_name = {source.name: source for source in available}
        self.sources = {}
        for configured in self.settings.sources:
            source = by_name.get(configured.name)
            if soft_assert(source, f"Configured source {configured.name!r} was not found"):
                self.sources[configured.name] = source  # type: ignore[assignment]
        logger.info("Resolved %d of %d configured source(s)", len(self.sources), len(self.settings.sources))
        return list(self.sources.values())

    def source(self, name: str) -> Source:
        source = self.sources.get(name)
        assert_that(source, f"Source {name!r} has not been resolved")
        return source  # type: ignore[return-value]

    @property
    def fusion_owner_id(self) -> Optional[str]:
        return self.settings.platform.owner_id

    # process lock and reset flag

    def set_process_lock(self) -> None:
        bag = self.state.get(self.fusion_source_id)
        if bag.get(PROCESS_LOCK):
            self.state.patch(self.fusion_source_id, [{"op": "replace", "path": f"/{PROCESS_LOCK}", "value": False}])
            raise ProcessLockError(
                "Another run holds the process lock. The lock has been reset; retry the operation."
            )
        self.state.patch(self.fusion_source_id, [{"op": "add", "path": f"/{PROCESS_LOCK}", "value": True}])
        logger.debug("Process lock acquired for %s", self.fusion_source_id)

    def release_process_lock(self) -> None:
        self.state.patch(self.fusion_source_id, [{"op": "replace", "path": f"/{PROCESS_LOCK}", "value": False}])
        logger.debug("Process lock released for %s", self.fusion_source_id)

    def is_locked(self) -> bool:
        return bool(self.state.get(self.fusion_source_id).get(PROCESS_LOCK))

    def reset_requested(self) -> bool:
        """True when a reset was requested through the state bag or, once, through the config.

        A configured reset is marked consumed after it runs and only fires
        again after the setting has been switched off for a run.
        """
        bag = self.state.get(self.fusion_source_id)
        if bag.get(RESET):
            return True
        if not self.settings.processing.reset:
            if bag.get(RESET_CONSUMED):
                self.state.patch(self.fusion_source_id, [{"op": "remove", "path": f"/{RESET_CONSUMED}"}])
            return False
        return not bag.get(RESET_CONSUMED)

    def disable_reset(self) -> None:
        operations = [{"op": "add", "path": f"/{RESET}", "value": False}]
        if self.settings.processing.reset:
            operations.append({"op": "add", "path": f"/{RESET_CONSUMED}", "value": True})
        self.state.patch(self.fusion_source_id, operations)

    def request_reset(self) -> None:
        self.state.patch(self.fusion_source_id, [{"op": "add", "path": f"/{RESET}", "value": True}])

    # batch-cumulative counts

    def load_batch_counts(self) -> Dict[str, int]:
        stored = self.state.get(self.fusion_source_id).get(BATCH_CUMULATIVE_COUNT) or {}
        self.batch_counts = {str(key): int(value) for key, value in stored.items()}
        return dict(self.batch_counts)

    def effective_limit(self, configured: SourceSettings) -> Optional[int]:
        if configured.account_limit is None:
            return None
        return self.batch_counts.get(configured.name, 0) + configured.account_limit

    def save_batch_counts(self) -> None:
        counts = dict(self.batch_counts)
        for configured in self.settings.sources:
            limit = self.effective_limit(configured)
            if limit is not None and configured.name in self.sources:
                counts[configured.name] = limit
        if not counts:
            return
        self.state.patch(self.fusion_source_id, [{"op": "add", "path": f"/{BATCH_CUMULATIVE_COUNT}", "value": counts}])
        self.batch_counts = counts
        logger.debug("Saved batch cumulative counts: %s", counts)

    def reset_batch_counts(self) -> None:
        self.state.patch(self.fusion_source_id, [{"op": "remove", "path": f"/{BATCH_CUMULATIVE_COUNT}"}])
        self.batch_counts = {}

    # aggregation

    async def aggregate_managed_sources(self) -> int:
        pending = [
            configured for configured in self.settings.sources
            if configured.force_aggregation and configured.name in self.sources
        ]
        await asyncio.gather(
            *(
                self._call(f"aggregate {configured.name}", lambda c=configured: self.accounts.aggregate(self.sources[c.name].id))
                for configured in pending
            )
        )
        if pending:
            logger.info("Aggregated %d source(s) before processing", len(pending))
        return len(pending)

    # fetches

    async def _fetch_source(self, configured: SourceSettings, abort: asyncio.Event) -> List[ManagedAccount]:
        source = self.sources[configured.name]
        limit = self.effective_limit(configured)

        async def fetch_page(offset: int, size: int) -> List[ManagedAccount]:
            return await self._call(
                f"list accounts of {configured.name}",
                lambda: self.accounts.list_accounts(
                    source.id, offset=offset, limit=size, account_filter=configured.account_filter
                ),
            )

        accounts = await paginate(fetch_page, page_size=self.settings.processing.page_size, limit=limit, abort=abort)
        self.fetched_counts[configured.name] = len(accounts)
        logger.debug("Fetched %d account(s) from %s", len(accounts), configured.name)
        return accounts

    async def fetch_managed_accounts(self, abort: Optional[asyncio.Event] = None) -> WorkQueue[str, ManagedAccount]:
        abort = abort or asyncio.Event()
        configured = [item for item in self.settings.sources if item.name in self.sources]
        try:
            results = await asyncio.gather(*(self._fetch_source(item, abort) for item in configured))
        except Exception:
            abort.set()
            raise
        queue: WorkQueue[str, ManagedAccount] = WorkQueue(name="managed accounts")
        for accounts in results:
            for account in accounts:
                queue.put(account.id, account)
        logger.info("Fetched %d managed account(s) from %d source(s)", len(queue), len(configured))
        return queue

    async def fetch_fusion_accounts(self) -> List[FusionAccountRecord]:
        records = await paginate(
            lambda offset, size: self._call(
                "list fusion accounts",
                lambda: self.accounts.list_fusion_accounts(self.fusion_source_id, offset=offset, limit=size),
            ),
            page_size=self.settings.processing.page_size,
        )
        logger.info("Fetched %d existing fusion account(s)", len(records))
        return records

    async def fetch_identities(self) -> List[IdentityRecord]:
        if not self.settings.processing.include_identities:
            return []
        identities = await paginate(
            lambda offset, size: self._call(
                "list identities",
                lambda: self.identities.list_identities(offset=offset, limit=size),
            ),
            page_size=self.settings.processing.page_size,
        )
        logger.info("Fetched %d identities", len(identities))
        return identities
