from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from backend.polaris.utils.circuit_breaker import CircuitBreaker

from .store import ReconcileStore
from .types import (
    ActionKind,
    Correction,
    Entitlement,
    EntitlementStatus,
    ReconcileAction,
    Tier,
)


logger = logging.getLogger(__name__)

STORE_BREAKER_NAME = "entitlement_store"


class ApplyError(RuntimeError):
    """Raised when an action could not be written to the entitlement store.

    Attributes:
        action: The action that failed
        user_id: User the action belongs to
    """

    def __init__(self, action: ReconcileAction, cause: BaseException):
        self.action = action
        self.user_id = action.user_id
        super().__init__(
            f"failed to apply {action.kind.value} for user {action.user_id}: {cause}"
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionApplier:
    """Executes reconciliation actions against the store and audits them.

    Each non-noop action is exactly one entitlement mutation followed by one
    correction append. The correction id is derived from the action, so
    replaying an action writes the same id and the sink absorbs it.
    """

    def __init__(
        self,
        store: ReconcileStore,
        *,
        breaker: Optional[CircuitBreaker[Any]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._breaker = breaker
        self._clock = clock

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if self._breaker is None:
            return await fn(*args, **kwargs)
        return await self._breaker.call_async(fn, *args, **kwargs)

    async def apply(
        self,
        action: ReconcileAction,
        current: Optional[Entitlement] = None,
    ) -> bool:
        """Apply one action. Returns False for noops, True once written.

        Raises:
            ApplyError: the mutation or the audit append failed
        """
        if action.is_noop:
            return False

        if action.kind is ActionKind.DOWNGRADE:
            after = {
                "tier": Tier.FREE.value,
                "plan_key": None,
                "status": EntitlementStatus.NONE.value,
            }
        elif action.kind in (ActionKind.GRANT, ActionKind.FIX_PLAN_KEY):
            if action.plan_key is None or action.tier is None:
                raise ApplyError(action, ValueError("paid action without plan_key/tier"))
            after = {
                "tier": action.tier.value,
                "plan_key": action.plan_key,
                "status": EntitlementStatus.ACTIVE.value,
            }
        else:
            raise ApplyError(action, ValueError(f"unsupported action kind {action.kind}"))

        correction = Correction(
            correction_id=action.correction_id,
            user_id=action.user_id,
            reason=action.reason,
            before=current.snapshot() if current is not None else None,
            after=after,
            created_at=self._clock(),
            related_event_id=action.event_id,
        )

        try:
            if action.kind is ActionKind.DOWNGRADE:
                await self._call(self._store.set_free, action.user_id)
            else:
                await self._call(
                    self._store.set_entitlement,
                    action.user_id,
                    tier=action.tier,
                    plan_key=action.plan_key,
                    status=EntitlementStatus.ACTIVE,
                )
            await self._call(self._store.append_correction, correction)
        except Exception as exc:
            raise ApplyError(action, exc) from exc

        logger.info(
            "reconciliation_action_applied",
            extra={
                "user_id": action.user_id,
                "kind": action.kind.value,
                "correction_id": correction.correction_id,
            },
        )
        return True
