"""
Polling trigger engine.

A timer fires ``poll_all_registrations`` every ``poll_interval`` seconds.
Each tick groups the registered workflows by credential and polls every
credential concurrently.  Per credential the cycle is:

    Idle → Polling → Success → Idle
                   → TokenExpired → Refresh → Polling (retried once)
                   → CursorInvalid → FullResync → Idle

A credential whose previous cycle is still running is skipped for the
tick.  No failure inside one credential's cycle (or one dispatch) escapes
to the scheduler or affects other credentials.

The engine knows nothing about any provider.  The ``source`` lists
changes behind a cursor and the ``routing`` turns each change into a
trigger kind plus payload.  One engine runs per provider.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from config.settings import config
from oauth.token_refresh import TokenRefreshManager
from triggers.dispatcher import WorkflowDispatcher
from triggers.errors import CursorInvalidError, ProviderRequestError
from triggers.registry import RegistrationArena
from utils.schemas import (
    CredentialPollResult,
    CredentialRecord,
    EventPage,
    PollOutcome,
    PollSummary,
    WorkflowRegistration,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _PollCycle:
    """State of one credential's cycle; the refreshed credential replaces the stale one."""

    __slots__ = ("credential", "refreshed")

    def __init__(self, credential: CredentialRecord):
        self.credential = credential
        self.refreshed = False


class PollingTriggerEngine:
    def __init__(
        self,
        credentials,
        workflows,
        registrations: RegistrationArena,
        source,
        routing,
        refresher: TokenRefreshManager,
        dispatcher: WorkflowDispatcher,
        name: str = "Google Calendar",
        cursor_field: str = "cursor",
        poll_interval: Optional[float] = None,
        page_size: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Parameters
        ----------
        credentials   : credential store (``get_many``, ``update``).
        workflows     : workflow store (``get_owners``).
        registrations : trigger registrations; must hold every kind of ``routing``.
        source        : provider delta query (``list_changes``).
        routing       : ``kinds``, ``route(item, now)`` and ``matches(payload, config)``.
        refresher     : access-token refresher shared with action execution.
        dispatcher    : workflow execution client.
        cursor_field  : credential column holding this provider's cursor.
        """
        self._credentials = credentials
        self._workflows = workflows
        self._registrations = registrations
        self._source = source
        self.routing = routing
        self._refresher = refresher
        self._dispatcher = dispatcher
        self.name = name
        self.cursor_field = cursor_field
        self.poll_interval = config.poll_interval_seconds if poll_interval is None else poll_interval
        self.page_size = page_size or config.poll_page_size
        self._clock = clock

        self.processing_credentials: Set[int] = set()
        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()

    # ── scheduler ───────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the timer; the first tick runs immediately.  Idempotent."""
        if self._running:
            return
        self._running = True
        logger.info("Starting %s polling (interval: %ss)", self.name, self.poll_interval)
        self._timer_task = asyncio.create_task(self._run_timer())

    def stop(self) -> None:
        """Stop the timer.  Ticks already in flight run to completion."""
        self._running = False
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None

    async def _run_timer(self) -> None:
        while self._running:
            task = asyncio.create_task(self._run_tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)
            await asyncio.sleep(self.poll_interval)

    async def _run_tick(self) -> None:
        try:
            summary = await self.poll_all_registrations()
        except Exception:
            logger.exception("%s polling tick failed", self.name)
            return
        if summary.results:
            logger.debug(
                "Polling tick: %d polled, %d skipped, %d failed",
                len(summary.results),
                summary.count(PollOutcome.SKIPPED),
                summary.count(PollOutcome.FAILED),
            )

    # ── one tick ────────────────────────────────────────────────────────

    async def poll_all_registrations(self) -> PollSummary:
        by_credential = self._group_registrations()
        if not by_credential:
            return PollSummary()

        all_workflow_ids = {wid for regs in by_credential.values() for wid, _ in regs}
        owners = await self._workflows.get_owners(all_workflow_ids)

        grouped: Dict[int, List[WorkflowRegistration]] = {}
        for credential_id, regs in by_credential.items():
            for workflow_id, wf_config in regs:
                user_id = owners.get(workflow_id)
                if user_id is None:
                    continue
                grouped.setdefault(credential_id, []).append(
                    WorkflowRegistration(workflow_id=workflow_id, user_id=user_id, config=wf_config)
                )
        if not grouped:
            return PollSummary()

        credentials = await self._credentials.get_many(grouped.keys())

        jobs: List[Tuple[int, Any]] = []
        for credential_id, wf_list in grouped.items():
            credential = credentials.get(credential_id)
            if credential is None:
                continue
            owned = [wf for wf in wf_list if wf.user_id == credential.user_id]
            if len(owned) < len(wf_list):
                logger.warning(
                    "Ignoring %d workflow(s) registered with credential %s of another user",
                    len(wf_list) - len(owned),
                    credential_id,
                )
            if owned:
                jobs.append((credential_id, self.check_credential_events(credential, owned)))

        results = await asyncio.gather(*[coro for _, coro in jobs], return_exceptions=True)

        summary = PollSummary()
        for (credential_id, _), result in zip(jobs, results):
            if isinstance(result, BaseException):
                logger.error("Polling credential %s raised: %s", credential_id, result)
                summary.results.append(
                    CredentialPollResult(
                        credential_id=credential_id,
                        outcome=PollOutcome.FAILED,
                        error=str(result),
                    )
                )
            else:
                summary.results.append(result)
        return summary

    def _group_registrations(self) -> Dict[int, List[Tuple[int, Dict[str, Any]]]]:
        """credential_id → [(workflow_id, config)] across this engine's trigger kinds."""
        grouped: Dict[int, List[Tuple[int, Dict[str, Any]]]] = {}
        seen: Set[Tuple[int, int]] = set()
        for kind in self.routing.kinds:
            for workflow_id, reg in self._registrations.registry(kind).get_registrations().items():
                if reg.credentials_id is None:
                    continue
                key = (reg.credentials_id, workflow_id)
                if key in seen:
                    continue
                seen.add(key)
                grouped.setdefault(reg.credentials_id, []).append((workflow_id, reg.config))
        return grouped

    # ── one credential ──────────────────────────────────────────────────

    async def check_credential_events(
        self,
        credential: CredentialRecord,
        workflows: List[WorkflowRegistration],
    ) -> CredentialPollResult:
        if credential.id in self.processing_credentials:
            logger.debug("Credential %s is still being polled, skipping this tick", credential.id)
            return CredentialPollResult(credential_id=credential.id, outcome=PollOutcome.SKIPPED)

        self.processing_credentials.add(credential.id)
        try:
            return await self._poll_credential(credential, workflows)
        except Exception as exc:
            logger.error("Failed to poll %s for credential %s: %s", self.name, credential.id, exc)
            return CredentialPollResult(
                credential_id=credential.id,
                outcome=PollOutcome.FAILED,
                error=str(exc),
            )
        finally:
            self.processing_credentials.discard(credential.id)

    async def _poll_credential(
        self,
        credential: CredentialRecord,
        workflows: List[WorkflowRegistration],
    ) -> CredentialPollResult:
        cycle = _PollCycle(await self._refresher.ensure_fresh_access_token(credential))
        cursor = getattr(credential, self.cursor_field)

        try:
            page = await self._list_changes(cycle, cursor)
        except CursorInvalidError:
            logger.warning("%s cursor expired for credential %s, resetting.", self.name, credential.id)
            page = await self._list_changes(cycle, None)
            if not page.next_cursor:
                raise ProviderRequestError(f"{self.name} full sync returned no cursor")
            await self._save_cursor(credential.id, page.next_cursor)
            return CredentialPollResult(credential_id=credential.id, outcome=PollOutcome.RESYNCED)

        if not page.next_cursor:
            raise ProviderRequestError(f"{self.name} listing returned no cursor")

        # First contact: record where we are without treating history as new.
        if not cursor:
            await self._save_cursor(credential.id, page.next_cursor)
            return CredentialPollResult(credential_id=credential.id, outcome=PollOutcome.BOOTSTRAPPED)

        dispatched = 0
        now = self._clock()
        for item in page.items:
            routed = self.routing.route(item, now)
            if routed is None:
                continue
            kind, payload = routed
            registry = self._registrations.registry(kind)

            for wf in workflows:
                reg = registry.get(wf.workflow_id)
                if reg is None or not self.routing.matches(payload, reg.config):
                    continue
                if await self._dispatch(wf.workflow_id, payload, item.get("id")):
                    dispatched += 1

        await self._save_cursor(credential.id, page.next_cursor)

        return CredentialPollResult(
            credential_id=credential.id,
            outcome=PollOutcome.SUCCESS,
            dispatched=dispatched,
        )

    async def _list_changes(self, cycle: _PollCycle, cursor: Optional[str]) -> EventPage:
        """
        List changes with the cycle's credential.  On HTTP 401 the token is
        force-refreshed once per cycle and the listing retried.
        """
        try:
            return await self._source.list_changes(cycle.credential, cursor, self.page_size)
        except ProviderRequestError as exc:
            if exc.status_code != 401 or cycle.refreshed:
                raise
        logger.info("Access token rejected for credential %s, refreshing", cycle.credential.id)
        cycle.refreshed = True
        cycle.credential = await self._refresher.force_refresh(cycle.credential)
        return await self._source.list_changes(cycle.credential, cursor, self.page_size)

    async def _dispatch(self, workflow_id: int, payload: Dict[str, Any], item_id: Any) -> bool:
        try:
            await self._dispatcher.trigger_workflow_execution(workflow_id, payload)
        except Exception as exc:
            logger.error(
                "Failed to trigger workflow %s for %s item %s: %s",
                workflow_id,
                self.name,
                item_id,
                exc,
            )
            return False
        return True

    async def _save_cursor(self, credential_id: int, cursor: str) -> None:
        await self._credentials.update(credential_id, **{self.cursor_field: cursor})
