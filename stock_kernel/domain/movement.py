"""
Movement Domain Rules.

Responsibility:
    Closed vocabularies (movement type, document status, link kind), the
    document state machine as data, and the two exhaustive mappings the
    engine dispatches on: the posting effect table and the reversal table.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Imported by models/,
    services/ and selectors/.  MUST NOT import from any of them.

Invariants enforced:
    - Every MovementType has exactly one posting effect and exactly one
      reverse type.  Both are verified at import time, so adding an enum
      member without a rule fails loudly at startup.
    - A transition is legal only if MOVEMENT_WORKFLOW lists it.
"""

from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID

from stock_kernel.db.types import ZERO


class MovementType(str, Enum):
    """Semantics of a movement document.  Immutable once created."""

    RECEIVE = "RECEIVE"
    ISSUE = "ISSUE"
    TRANSFER = "TRANSFER"
    ADJUST = "ADJUST"
    RETURN = "RETURN"


class DocStatus(str, Enum):
    """Lifecycle status of a movement document.

    POSTED and CANCELLED are terminal.
    """

    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    POSTED = "POSTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class LinkKind(str, Enum):
    """Why a document points at another record."""

    REVERSAL = "REVERSAL"
    RETURN_FROM = "RETURN_FROM"
    IMPORT = "IMPORT"
    STOCK_COUNT = "STOCK_COUNT"


# Documents in these statuses no longer claim anything (reversal slot, return qty).
INACTIVE_STATUSES: frozenset[DocStatus] = frozenset(
    {DocStatus.CANCELLED, DocStatus.REJECTED}
)

EDITABLE_STATUSES: frozenset[DocStatus] = frozenset(
    {DocStatus.DRAFT, DocStatus.REJECTED}
)

TERMINAL_STATUSES: frozenset[DocStatus] = frozenset(
    {DocStatus.POSTED, DocStatus.CANCELLED}
)


@dataclass(frozen=True)
class DocumentLink:
    """Typed reference from a document to its origin."""

    kind: LinkKind
    target_id: UUID


# -----------------------------------------------------------------------------
# State machine
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Guard:
    """A condition for a transition."""
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""
    from_state: DocStatus
    to_state: DocStatus
    action: str
    guard: Guard | None = None
    posts_balances: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    description: str
    initial_state: DocStatus
    states: tuple[DocStatus, ...]
    transitions: tuple[Transition, ...]

    def transition_for(self, from_state: DocStatus, action: str) -> Transition | None:
        """Return the transition for ``action`` out of ``from_state``, if any."""
        for transition in self.transitions:
            if transition.from_state == from_state and transition.action == action:
                return transition
        return None

    def allowed_actions(self, state: DocStatus) -> tuple[str, ...]:
        return tuple(t.action for t in self.transitions if t.from_state == state)


HAS_LINES = Guard(
    name="has_lines",
    description="Document carries at least one line",
)

SUFFICIENT_STOCK = Guard(
    name="sufficient_stock",
    description="Every decrement is covered by the on-hand balance",
)

MOVEMENT_WORKFLOW = Workflow(
    name="stock_movement",
    description="Stock movement document lifecycle",
    initial_state=DocStatus.DRAFT,
    states=tuple(DocStatus),
    transitions=(
        Transition(DocStatus.DRAFT, DocStatus.DRAFT, action="update"),
        Transition(DocStatus.REJECTED, DocStatus.REJECTED, action="update"),
        Transition(DocStatus.DRAFT, DocStatus.SUBMITTED, action="submit", guard=HAS_LINES),
        Transition(DocStatus.REJECTED, DocStatus.SUBMITTED, action="submit", guard=HAS_LINES),
        Transition(DocStatus.SUBMITTED, DocStatus.APPROVED, action="approve"),
        Transition(DocStatus.SUBMITTED, DocStatus.REJECTED, action="reject"),
        Transition(
            DocStatus.APPROVED,
            DocStatus.POSTED,
            action="post",
            guard=SUFFICIENT_STOCK,
            posts_balances=True,
        ),
        Transition(DocStatus.DRAFT, DocStatus.CANCELLED, action="cancel"),
        Transition(DocStatus.SUBMITTED, DocStatus.CANCELLED, action="cancel"),
        Transition(DocStatus.APPROVED, DocStatus.CANCELLED, action="cancel"),
        Transition(DocStatus.REJECTED, DocStatus.CANCELLED, action="cancel"),
    ),
)

assert not any(
    t.from_state in TERMINAL_STATUSES for t in MOVEMENT_WORKFLOW.transitions
), "terminal statuses must have no outgoing transitions"


# -----------------------------------------------------------------------------
# Posting effects
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class BalanceDelta:
    """Signed change to apply at one location.  Negative means decrement."""

    location_id: UUID
    qty: Decimal


@dataclass(frozen=True)
class LocationRoles:
    """Which location fields a line of a given type must carry."""

    needs_from: bool
    needs_to: bool


def _receive_effect(qty: Decimal, from_id: UUID | None, to_id: UUID | None) -> tuple[BalanceDelta, ...]:
    return (BalanceDelta(to_id, qty),)


def _issue_effect(qty: Decimal, from_id: UUID | None, to_id: UUID | None) -> tuple[BalanceDelta, ...]:
    return (BalanceDelta(from_id, -qty),)


def _transfer_effect(qty: Decimal, from_id: UUID | None, to_id: UUID | None) -> tuple[BalanceDelta, ...]:
    # Decrement first: a short source must fail before anything lands at the target.
    return (BalanceDelta(from_id, -qty), BalanceDelta(to_id, qty))


def _adjust_effect(qty: Decimal, from_id: UUID | None, to_id: UUID | None) -> tuple[BalanceDelta, ...]:
    return (BalanceDelta(to_id, qty),)


EffectFn = Callable[[Decimal, UUID | None, UUID | None], tuple[BalanceDelta, ...]]

POSTING_EFFECTS: dict[MovementType, EffectFn] = {
    MovementType.RECEIVE: _receive_effect,
    MovementType.ISSUE: _issue_effect,
    MovementType.TRANSFER: _transfer_effect,
    MovementType.ADJUST: _adjust_effect,
    MovementType.RETURN: _receive_effect,
}

LOCATION_ROLES: dict[MovementType, LocationRoles] = {
    MovementType.RECEIVE: LocationRoles(needs_from=False, needs_to=True),
    MovementType.ISSUE: LocationRoles(needs_from=True, needs_to=False),
    MovementType.TRANSFER: LocationRoles(needs_from=True, needs_to=True),
    MovementType.ADJUST: LocationRoles(needs_from=False, needs_to=True),
    MovementType.RETURN: LocationRoles(needs_from=False, needs_to=True),
}

# Reversing a document of the key type produces a document of the value type.
REVERSE_TYPES: dict[MovementType, MovementType] = {
    MovementType.RECEIVE: MovementType.ISSUE,
    MovementType.ISSUE: MovementType.RECEIVE,
    MovementType.TRANSFER: MovementType.TRANSFER,
    MovementType.ADJUST: MovementType.ADJUST,
    MovementType.RETURN: MovementType.ISSUE,
}

for _table_name, _table in (
    ("POSTING_EFFECTS", POSTING_EFFECTS),
    ("LOCATION_ROLES", LOCATION_ROLES),
    ("REVERSE_TYPES", REVERSE_TYPES),
):
    _missing = set(MovementType) - set(_table)
    assert not _missing, f"{_table_name} missing movement types: {sorted(m.value for m in _missing)}"


def balance_deltas(
    movement_type: MovementType,
    qty: Decimal,
    from_location_id: UUID | None,
    to_location_id: UUID | None,
) -> tuple[BalanceDelta, ...]:
    """Balance changes one line of ``movement_type`` produces when posted."""
    return POSTING_EFFECTS[movement_type](qty, from_location_id, to_location_id)


def qty_is_valid(movement_type: MovementType, qty: Decimal) -> bool:
    """ADJUST carries a signed non-zero qty; every other type a positive one."""
    if movement_type is MovementType.ADJUST:
        return qty != ZERO
    return qty > ZERO


@dataclass(frozen=True)
class ReversedLineShape:
    """Location roles and qty for the mirror image of one posted line."""

    from_location_id: UUID | None
    to_location_id: UUID | None
    qty: Decimal


def reverse_line(
    original_type: MovementType,
    qty: Decimal,
    from_location_id: UUID | None,
    to_location_id: UUID | None,
) -> ReversedLineShape:
    """
    Shape of the reversal line for one line of a posted document.

    TRANSFER swaps from/to.  ADJUST negates qty at the same location.
    Otherwise the magnitude is kept and the location moves to the role the
    reverse type requires.
    """
    reverse_type = REVERSE_TYPES[original_type]
    if original_type is MovementType.TRANSFER:
        return ReversedLineShape(to_location_id, from_location_id, qty)
    if original_type is MovementType.ADJUST:
        return ReversedLineShape(None, to_location_id, -qty)

    location = to_location_id or from_location_id
    roles = LOCATION_ROLES[reverse_type]
    return ReversedLineShape(
        location if roles.needs_from else None,
        location if roles.needs_to else None,
        qty,
    )
