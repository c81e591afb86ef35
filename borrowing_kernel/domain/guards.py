"""
Transition guard evaluation.

Guards are declared on workflow transitions (name + description).  The
GuardExecutor holds the evaluation logic per guard name and is called by
the workflow engine after the state and role checks and before any row
is mutated.  An evaluator returns ``None`` when the guard passes or a
``GuardViolation`` naming the offending field.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from uuid import UUID

from borrowing_kernel.domain.dtos import TransitionPayload
from borrowing_kernel.domain.workflow import Guard, Transition, WorkflowAction
from borrowing_kernel.exceptions import GuardFailedError
from borrowing_kernel.logging_config import get_logger

logger = get_logger("domain.guards")


@dataclass(frozen=True)
class GuardItem:
    item_id: UUID
    expected_return: date | None


@dataclass(frozen=True)
class GuardContext:
    """Everything a guard may look at; built by the engine under the batch lock."""

    batch_id: UUID
    action: WorkflowAction
    items: tuple[GuardItem, ...]
    payload: TransitionPayload
    now: datetime
    tz: tzinfo = timezone.utc

    def selected_items(self) -> tuple[GuardItem, ...]:
        """Items named by ``payload.item_ids``, or every item when none are named."""
        if not self.payload.item_ids:
            return self.items
        wanted = set(self.payload.item_ids)
        return tuple(item for item in self.items if item.item_id in wanted)


@dataclass(frozen=True)
class GuardViolation:
    field: str
    detail: str


GuardEvaluator = Callable[[GuardContext], "GuardViolation | None"]


class GuardExecutor:
    """Evaluates workflow guards against a GuardContext."""

    def __init__(self) -> None:
        self._evaluators: dict[str, GuardEvaluator] = {}

    def register(self, guard_name: str, evaluator: GuardEvaluator) -> None:
        """Register an evaluator for a guard by name."""
        self._evaluators[guard_name] = evaluator

    def evaluate(self, guard: Guard, context: GuardContext) -> GuardViolation | None:
        fn = self._evaluators.get(guard.name)
        if fn is None:
            logger.warning(
                "guard_no_evaluator",
                extra={"guard_name": guard.name},
            )
            return GuardViolation(field="-", detail="no evaluator registered")
        return fn(context)

    def check(self, transition: Transition, context: GuardContext) -> None:
        """Raise GuardFailedError for the first guard of *transition* that fails."""
        for guard in transition.guards:
            violation = self.evaluate(guard, context)
            if violation is not None:
                raise GuardFailedError(guard.name, violation.field, violation.detail)


# ---------------------------------------------------------------------------
# Built-in evaluators
# ---------------------------------------------------------------------------


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _reason_required(ctx: GuardContext) -> GuardViolation | None:
    if not (ctx.payload.reason or "").strip():
        return GuardViolation("reason", "a non-empty reason is required")
    return None


def _items_belong_to_batch(ctx: GuardContext) -> GuardViolation | None:
    known = {item.item_id for item in ctx.items}
    referenced = list(ctx.payload.items.keys()) + list(ctx.payload.item_ids)
    for item_id in referenced:
        if item_id not in known:
            return GuardViolation(f"items[{item_id}]", "item is not part of this batch")
    return None


def _expected_return_set(ctx: GuardContext) -> GuardViolation | None:
    for item in ctx.items:
        supplied = ctx.payload.items.get(item.item_id)
        if supplied is not None and supplied.expected_return is not None:
            continue
        if item.expected_return is None:
            return GuardViolation(
                f"items[{item.item_id}].expected_return",
                "expected return date must be set before release",
            )
    return None


def _actual_return_not_future(ctx: GuardContext) -> GuardViolation | None:
    actual = ctx.payload.actual_return
    if actual is not None and _aware(actual) > _aware(ctx.now):
        return GuardViolation("actual_return", "return time is in the future")
    return None


def _extension_date_valid(ctx: GuardContext) -> GuardViolation | None:
    new_date = ctx.payload.new_expected_return
    if new_date is None:
        return GuardViolation("new_expected_return", "a new expected return date is required")
    for item in ctx.selected_items():
        if item.expected_return is not None and new_date < item.expected_return:
            return GuardViolation(
                "new_expected_return",
                f"{new_date.isoformat()} is earlier than the current expected "
                f"return {item.expected_return.isoformat()} of item {item.item_id}",
            )
    return None


def default_guard_executor() -> GuardExecutor:
    """Return a GuardExecutor with the borrowing guards registered."""
    ex = GuardExecutor()
    ex.register("reason_required", _reason_required)
    ex.register("items_belong_to_batch", _items_belong_to_batch)
    ex.register("expected_return_set", _expected_return_set)
    ex.register("actual_return_not_future", _actual_return_not_future)
    ex.register("extension_date_valid", _extension_date_valid)
    return ex
