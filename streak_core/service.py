"""Async boundary between the app and the competition backend.

The client validates mutating calls against the last displayed snapshot before
touching the network. A local rejection that may come from a stale snapshot is
re-checked once against a fresh fetch. Transient failures are retried with the
same idempotency token, and the authoritative snapshot is re-fetched after every
mutation.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, TypeVar

from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from . import errors
from .config import EngineSettings, get_settings
from .errors import CompetitionServiceError, EngineError, TransientBackendError
from .lifecycle import apply_command
from .reconcile import (
    DisplayedCompetition,
    RefreshTrigger,
    mark_flex_sent,
    mark_nudge_sent,
    reconcile,
)
from .throttle import check_flex, check_nudge
from .types import CompetitionState
from .validation import CreateCompetitionRequest, decode_competition

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Local rejections that a newer snapshot cannot overturn
FINAL_LOCAL_REJECTIONS = {
    errors.PERMISSION_DENIED,
    errors.INVALID_REQUEST,
    errors.ALREADY_PERFORMED_TODAY,
}


class CompetitionBackend(Protocol):
    """Transport to the authoritative backend.

    Rule violations are raised as CompetitionServiceError; network failures
    that may be retried as TransientBackendError.
    """

    async def load_competition(self, competition_id: str, *, caller_id: str) -> Dict[str, Any]: ...

    async def create_competition(
        self, request: CreateCompetitionRequest, *, caller_id: str, request_id: str
    ) -> str: ...

    async def invite_user(
        self, competition_id: str, user_id: str, *, caller_id: str, request_id: str
    ) -> None: ...

    async def accept_invite(self, competition_id: str, *, caller_id: str, request_id: str) -> None: ...

    async def decline_invite(self, competition_id: str, *, caller_id: str, request_id: str) -> None: ...

    async def schedule_competition(
        self, competition_id: str, start_date: str, *, caller_id: str, request_id: str
    ) -> None: ...

    async def start_competition(self, competition_id: str, *, caller_id: str, request_id: str) -> None: ...

    async def terminate_competition(
        self, competition_id: str, *, caller_id: str, request_id: str
    ) -> None: ...

    async def update_competition(
        self, competition_id: str, changes: Dict[str, Any], *, caller_id: str, request_id: str
    ) -> None: ...

    async def delete_competition(self, competition_id: str, *, caller_id: str, request_id: str) -> None: ...

    async def send_flex(self, competition_id: str, *, caller_id: str, request_id: str) -> None: ...

    async def send_nudge(
        self, competition_id: str, target_user_id: str, *, caller_id: str, request_id: str
    ) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CompetitionClient:
    """Per-user client: mutations, refreshes and the displayed snapshots."""

    def __init__(
        self,
        backend: CompetitionBackend,
        current_user_id: str,
        *,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._backend = backend
        self.current_user_id = current_user_id
        self._settings = settings or get_settings()
        self._clock = clock
        self._displayed: Dict[str, DisplayedCompetition] = {}
        self._generation = 0

    # ---------- reads ----------

    def displayed(self, competition_id: str) -> Optional[DisplayedCompetition]:
        return self._displayed.get(competition_id)

    async def refresh(
        self, competition_id: str, trigger: RefreshTrigger = RefreshTrigger.APPEAR
    ) -> DisplayedCompetition:
        """Fetch the authoritative snapshot and replace the displayed one."""
        self._generation += 1
        generation = self._generation
        logger.info(f"Refreshing {competition_id} ({trigger.value}, fetch {generation})")
        raw = await self._call(
            lambda: self._backend.load_competition(competition_id, caller_id=self.current_user_id)
        )
        fetched = decode_competition(raw)
        view = reconcile(self._displayed.get(competition_id), fetched, generation)
        self._displayed[competition_id] = view
        return view

    # ---------- mutations ----------

    async def create_competition(
        self,
        name: str,
        competition_type: str,
        workouts: list[str],
        goal: float | None,
        unit: str,
        first_to: int,
        interval: str | None,
        duration_hours: int | None = None,
        history: bool = False,
    ) -> str:
        try:
            request = CreateCompetitionRequest(
                competition_name=name,
                type=competition_type,
                workouts=workouts,
                goal=goal,
                unit=unit,
                first_to=first_to,
                interval=interval,
                duration_hours=duration_hours,
                history=history,
            )
        except ValidationError as e:
            raise CompetitionServiceError.of(errors.INVALID_REQUEST, str(e)) from e
        request_id = str(uuid.uuid4())
        competition_id = await self._call(
            lambda: self._backend.create_competition(
                request, caller_id=self.current_user_id, request_id=request_id
            )
        )
        logger.info(f"Competition created: {competition_id}")
        await self.refresh(competition_id, RefreshTrigger.AFTER_MUTATION)
        return competition_id

    async def invite_user(self, competition_id: str, user_id: str) -> DisplayedCompetition:
        await self._precheck(competition_id, {"type": "INVITE_USER", "user_id": user_id})
        return await self._mutate(
            competition_id,
            lambda rid: self._backend.invite_user(
                competition_id, user_id, caller_id=self.current_user_id, request_id=rid
            ),
        )

    async def accept_invite(self, competition_id: str) -> DisplayedCompetition:
        await self._precheck(competition_id, {"type": "ACCEPT_INVITE"})
        return await self._mutate(
            competition_id,
            lambda rid: self._backend.accept_invite(
                competition_id, caller_id=self.current_user_id, request_id=rid
            ),
        )

    async def decline_invite(self, competition_id: str) -> DisplayedCompetition:
        await self._precheck(competition_id, {"type": "DECLINE_INVITE"})
        return await self._mutate(
            competition_id,
            lambda rid: self._backend.decline_invite(
                competition_id, caller_id=self.current_user_id, request_id=rid
            ),
        )

    async def start_competition(self, competition_id: str) -> DisplayedCompetition:
        await self._precheck(competition_id, {"type": "START"})
        return await self._mutate(
            competition_id,
            lambda rid: self._backend.start_competition(
                competition_id, caller_id=self.current_user_id, request_id=rid
            ),
        )

    async def schedule_competition(self, competition_id: str, start_date: date) -> DisplayedCompetition:
        await self._precheck(competition_id, {"type": "SCHEDULE", "start_date": start_date})
        return await self._mutate(
            competition_id,
            lambda rid: self._backend.schedule_competition(
                competition_id, start_date.isoformat(), caller_id=self.current_user_id, request_id=rid
            ),
        )

    async def terminate_competition(self, competition_id: str) -> DisplayedCompetition:
        await self._precheck(competition_id, {"type": "TERMINATE"})
        return await self._mutate(
            competition_id,
            lambda rid: self._backend.terminate_competition(
                competition_id, caller_id=self.current_user_id, request_id=rid
            ),
        )

    async def update_competition(
        self, competition_id: str, changes: Dict[str, Any]
    ) -> DisplayedCompetition:
        await self._precheck(competition_id, {"type": "UPDATE_SETTINGS", **changes})
        return await self._mutate(
            competition_id,
            lambda rid: self._backend.update_competition(
                competition_id, changes, caller_id=self.current_user_id, request_id=rid
            ),
        )

    async def delete_competition(self, competition_id: str) -> None:
        await self._precheck(competition_id, {"type": "DELETE"})
        request_id = str(uuid.uuid4())
        await self._call(
            lambda: self._backend.delete_competition(
                competition_id, caller_id=self.current_user_id, request_id=request_id
            )
        )
        self._displayed.pop(competition_id, None)
        logger.info(f"Competition deleted: {competition_id}")

    async def send_flex(self, competition_id: str) -> DisplayedCompetition:
        view = await self._checked_view(
            competition_id,
            lambda v: check_flex(
                v.competition,
                self.current_user_id,
                self._clock(),
                already_today=v.flex_sent_today,
                first_weekday=self._settings.first_weekday,
            ),
        )
        request_id = str(uuid.uuid4())
        await self._call(
            lambda: self._backend.send_flex(
                competition_id, caller_id=self.current_user_id, request_id=request_id
            )
        )
        if view is not None:
            self._displayed[competition_id] = mark_flex_sent(view)
        return await self._refresh_after_mutation(competition_id)

    async def send_nudge(self, competition_id: str, target_user_id: str) -> DisplayedCompetition:
        view = await self._checked_view(
            competition_id,
            lambda v: check_nudge(
                v.competition,
                self.current_user_id,
                target_user_id,
                self._clock(),
                already_today=target_user_id in v.nudged_today,
                first_weekday=self._settings.first_weekday,
            ),
        )
        request_id = str(uuid.uuid4())
        await self._call(
            lambda: self._backend.send_nudge(
                competition_id, target_user_id, caller_id=self.current_user_id, request_id=request_id
            )
        )
        if view is not None:
            self._displayed[competition_id] = mark_nudge_sent(view, target_user_id)
        return await self._refresh_after_mutation(competition_id)

    # ---------- helpers ----------

    async def _precheck(self, competition_id: str, cmd: Dict[str, Any]) -> None:
        """Dry-run the command on the displayed snapshot; raise if it would be rejected."""

        def dry_run(view: DisplayedCompetition) -> EngineError | None:
            state: CompetitionState = view.competition
            return apply_command(
                state,
                {**cmd, "actor_id": self.current_user_id},
                now=self._clock(),
                first_weekday=self._settings.first_weekday,
            ).error

        await self._checked_view(competition_id, dry_run)

    async def _checked_view(
        self,
        competition_id: str,
        check: Callable[[DisplayedCompetition], EngineError | None],
    ) -> Optional[DisplayedCompetition]:
        """Run ``check`` against the displayed snapshot and return the view it passed on.

        Without a displayed snapshot the backend is the only judge. A rejection that
        a newer snapshot could overturn is re-checked once against a fresh fetch.
        """
        view = self._displayed.get(competition_id)
        if view is None:
            return None
        error = check(view)
        if error is not None and error.kind not in FINAL_LOCAL_REJECTIONS:
            logger.info(f"Local check on {competition_id} failed ({error.kind}); re-checking after refresh")
            view = await self.refresh(competition_id, RefreshTrigger.BEFORE_MUTATION)
            error = check(view)
        if error is not None:
            raise CompetitionServiceError(error)
        return view

    async def _mutate(
        self,
        competition_id: str,
        call: Callable[[str], Awaitable[Any]],
    ) -> DisplayedCompetition:
        # One token per user action; every retry of it reuses the token.
        request_id = str(uuid.uuid4())
        await self._call(lambda: call(request_id))
        return await self._refresh_after_mutation(competition_id)

    async def _refresh_after_mutation(self, competition_id: str) -> DisplayedCompetition:
        try:
            return await self.refresh(competition_id, RefreshTrigger.AFTER_MUTATION)
        except (CompetitionServiceError, TransientBackendError) as e:
            # The mutation itself succeeded; keep the optimistic view until the next refresh.
            logger.warning(f"Refresh after mutation failed for {competition_id}: {e}")
            view = self._displayed.get(competition_id)
            if view is None:
                raise
            return view

    async def _call(self, fn: Callable[[], Awaitable[T]]) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._settings.retry_attempts),
            wait=wait_exponential(multiplier=0.5, max=self._settings.retry_wait_max),
            retry=retry_if_exception_type(TransientBackendError),
            reraise=True,
        ):
            with attempt:
                return await fn()
        raise AssertionError("unreachable")  # pragma: no cover
