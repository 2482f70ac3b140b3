"""
Cross-Reference Rules.

Pure-function module holding every referential invariant between the
synchronised collections.  Each rule receives a mutable ``state`` mapping
(collection key -> list of records), repairs it in place and returns one
:class:`~bondapp.errors.ReferentialDrift` per correction.  Functions are
stateless and deterministic: running a rule on its own output changes
nothing.

Records are the plain JSON dicts the screens write (camelCase keys).
Ids and pointers are strings.  Anything that is not a dict with a string
``id`` is left untouched; a pointer or list entry that is not a string is
treated as dangling.

Registered rules
----------------
``inventory_assignment``
    ``inventory[].assignedTo`` / ``members[].assignedInventory``.
``transport_roster``
    Inside each performance: ``attendance[].transportAssignment`` /
    ``transport.buses[].passengers`` and ``transport.privateCars[].passengers``.
``derived_contracts``
    ``performances[].contracts[]`` / ``contracts[]`` with ``sourcePerformanceId``.
``attendance_ledger``
    ``performances[].attendance`` / ``members[].attendedPerformances``,
    ``missedPerformances`` and ``performanceStats``.

Adding a rule = one function + one ``CrossReferenceRule`` entry in
``DEFAULT_RULES``.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from bondapp.errors import ReferentialDrift
from bondapp.models.ensemble import (
    ContractFile,
    DerivedContract,
    PerformanceHeader,
    derived_contract_id,
)
from bondapp.models.enums import (
    AttendanceStatus,
    Cardinality,
    CollectionKey,
    InventoryStatus,
)

Record = dict[str, Any]
State = dict[str, list[Any]]
RuleFunction = Callable[[State], list[ReferentialDrift]]

_TRANSPORT_KINDS: tuple[str, ...] = ("buses", "privateCars")
_LEDGER_FIELDS: tuple[str, ...] = (
    "attendedPerformances",
    "missedPerformances",
    "performanceStats",
)


class CrossReferenceRule:
    """Declarative description of one cross-reference plus its repair pass.

    Attributes
    ----------
    name:
        Stable identifier used in logs and audit rows.
    forward_collection / forward_field:
        Where the pointer lives (e.g. ``inventory`` / ``assignedTo``).
    back_collection / back_field:
        Where the pointer is mirrored (e.g. ``members`` / ``assignedInventory``).
    cardinality:
        Shape of the reference.
    apply:
        Pure repair function over the rule's collections.
    """

    __slots__ = (
        "name",
        "forward_collection",
        "forward_field",
        "back_collection",
        "back_field",
        "cardinality",
        "apply",
    )

    def __init__(
        self,
        name: str,
        forward_collection: str,
        forward_field: str,
        back_collection: str,
        back_field: str,
        cardinality: Cardinality,
        apply: RuleFunction,
    ) -> None:
        self.name = name
        self.forward_collection = forward_collection
        self.forward_field = forward_field
        self.back_collection = back_collection
        self.back_field = back_field
        self.cardinality = cardinality
        self.apply = apply

    @property
    def collections(self) -> tuple[str, ...]:
        """Distinct collection keys this rule reads and may rewrite."""
        if self.forward_collection == self.back_collection:
            return (self.forward_collection,)
        return (self.forward_collection, self.back_collection)

    def __repr__(self) -> str:
        return f"CrossReferenceRule({self.name!r})"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_ref(value: Any) -> bool:
    return isinstance(value, str)


def _records(collection: Optional[list[Any]]) -> Iterable[Record]:
    """Yield the dict records of *collection* that carry a string ``id``."""
    for record in collection or []:
        if isinstance(record, dict) and _is_ref(record.get("id")):
            yield record


def _reconcile_list(current: Any, expected: list[str]) -> list[str]:
    """Return *expected* ordered like *current*, new entries appended.

    Entries of *current* that are not expected are dropped, as are
    duplicates.  Keeps the result stable when nothing changed.
    """
    wanted = set(expected)
    seen: set[str] = set()
    result: list[str] = []
    for entry in current if isinstance(current, list) else []:
        if _is_ref(entry) and entry in wanted and entry not in seen:
            result.append(entry)
            seen.add(entry)
    for entry in expected:
        if entry not in seen:
            result.append(entry)
            seen.add(entry)
    return result


def _drift(rule: str, collection: str, entity_id: Any, message: str) -> ReferentialDrift:
    return ReferentialDrift(message, rule=rule, collection=collection, entity_id=str(entity_id))


# ---------------------------------------------------------------------------
# inventory <-> members
# ---------------------------------------------------------------------------

def reconcile_inventory_assignments(state: State) -> list[ReferentialDrift]:
    """Make ``inventory.assignedTo`` and ``members.assignedInventory`` agree.

    An item is assigned when ``status == "assigned"``.  Assigned items
    pointing at a missing member are released (``status`` back to
    ``"available"``, ``assignedTo`` and ``assignmentDate`` removed).  Each
    member's list then holds exactly the items assigned to it.
    """
    rule = "inventory_assignment"
    inventory = state.get(CollectionKey.INVENTORY, [])
    members = state.get(CollectionKey.MEMBERS, [])
    member_ids = {member["id"] for member in _records(members)}
    drifts: list[ReferentialDrift] = []

    assigned: dict[str, list[str]] = {}
    for item in _records(inventory):
        if item.get("status") != InventoryStatus.ASSIGNED:
            continue
        owner = item.get("assignedTo")
        if _is_ref(owner) and owner in member_ids:
            assigned.setdefault(owner, []).append(item["id"])
            continue
        item["status"] = InventoryStatus.AVAILABLE.value
        item.pop("assignedTo", None)
        item.pop("assignmentDate", None)
        drifts.append(_drift(
            rule, CollectionKey.INVENTORY, item["id"],
            f"Inventory item assigned to missing member {owner!r}; released.",
        ))

    for member in _records(members):
        current = member.get("assignedInventory")
        expected = _reconcile_list(current, assigned.get(member["id"], []))
        if expected == (current if isinstance(current, list) else []):
            continue
        member["assignedInventory"] = expected
        drifts.append(_drift(
            rule, CollectionKey.MEMBERS, member["id"],
            f"assignedInventory {current!r} -> {expected!r}.",
        ))

    return drifts


# ---------------------------------------------------------------------------
# attendance <-> transport roster (per performance)
# ---------------------------------------------------------------------------

def _transport_units(performance: Record) -> list[Record]:
    transport = performance.get("transport")
    if not isinstance(transport, dict):
        return []
    units: list[Record] = []
    for kind in _TRANSPORT_KINDS:
        units.extend(_records(transport.get(kind)))
    return units


def reconcile_transport_rosters(state: State) -> list[ReferentialDrift]:
    """Make attendance transport assignments and vehicle rosters agree.

    Only confirmed members travel: any other attendance record loses its
    ``transportAssignment``, as does one naming a vehicle that does not
    exist in the performance.  Every bus and private car then carries
    exactly the confirmed members assigned to it.
    """
    rule = "transport_roster"
    drifts: list[ReferentialDrift] = []

    for performance in _records(state.get(CollectionKey.PERFORMANCES, [])):
        units = _transport_units(performance)
        unit_ids = {unit["id"] for unit in units}
        riders: dict[str, list[str]] = {}

        for attendance in performance.get("attendance") or []:
            if not isinstance(attendance, dict):
                continue
            if "transportAssignment" not in attendance:
                continue
            member_id = attendance.get("memberId")
            if not _is_ref(member_id):
                continue
            vehicle = attendance.get("transportAssignment")
            if attendance.get("status") != AttendanceStatus.CONFIRMED:
                reason = "member is not confirmed"
            elif not _is_ref(vehicle) or vehicle not in unit_ids:
                reason = f"vehicle {vehicle!r} does not exist"
            else:
                riders.setdefault(vehicle, []).append(member_id)
                continue
            attendance.pop("transportAssignment")
            drifts.append(_drift(
                rule, CollectionKey.PERFORMANCES, performance["id"],
                f"Transport assignment of {member_id!r} removed: {reason}.",
            ))

        for unit in units:
            current = unit.get("passengers")
            expected = _reconcile_list(current, riders.get(unit["id"], []))
            if expected == (current if isinstance(current, list) else []):
                continue
            unit["passengers"] = expected
            drifts.append(_drift(
                rule, CollectionKey.PERFORMANCES, performance["id"],
                f"Passengers of {unit['id']!r} {current!r} -> {expected!r}.",
            ))

    return drifts


# ---------------------------------------------------------------------------
# performances -> derived contracts
# ---------------------------------------------------------------------------

def reconcile_derived_contracts(state: State) -> list[ReferentialDrift]:
    """Keep one generated contract per contract file attached to a performance.

    Missing contracts are created from the performance; generated
    contracts whose performance or file is gone are removed.  Existing
    generated contracts are never rewritten, and contracts entered by
    hand (no ``sourcePerformanceId``) are never touched.
    """
    rule = "derived_contracts"
    drifts: list[ReferentialDrift] = []
    expected: dict[str, tuple[Record, Record]] = {}

    for performance in _records(state.get(CollectionKey.PERFORMANCES, [])):
        for contract_file in _records(performance.get("contracts")):
            contract_id = derived_contract_id(performance["id"], contract_file["id"])
            expected[contract_id] = (performance, contract_file)

    kept: list[Any] = []
    present: set[str] = set()
    for contract in state.get(CollectionKey.CONTRACTS, []):
        if not isinstance(contract, dict) or contract.get("sourcePerformanceId") is None:
            kept.append(contract)
            continue
        contract_id = contract.get("id")
        if _is_ref(contract_id) and contract_id in expected and contract_id not in present:
            kept.append(contract)
            present.add(contract_id)
            continue
        drifts.append(_drift(
            rule, CollectionKey.CONTRACTS, contract_id,
            "Generated contract no longer backed by a performance file; removed.",
        ))

    for contract_id, (performance, contract_file) in expected.items():
        if contract_id in present:
            continue
        try:
            generated = DerivedContract.from_performance(
                PerformanceHeader.model_validate(performance),
                ContractFile.model_validate(contract_file),
            )
        except ValidationError:
            continue
        kept.append(generated.model_dump())
        drifts.append(_drift(
            rule, CollectionKey.CONTRACTS, contract_id,
            f"Contract generated from performance {performance['id']!r}.",
        ))

    state[CollectionKey.CONTRACTS] = kept
    return drifts


# ---------------------------------------------------------------------------
# performances -> member attendance ledger
# ---------------------------------------------------------------------------

def _performance_stats(attended: int, missed: int) -> dict[str, Any]:
    total = attended + missed
    rate = round(attended / total * 100, 2) if total else 0
    return {
        "totalPerformances": total,
        "attended": attended,
        "missed": missed,
        "attendanceRate": rate,
    }


def reconcile_attendance_ledger(state: State) -> list[ReferentialDrift]:
    """Recompute each member's attended/missed lists from performance attendance.

    Confirmed attendance counts as attended, absent as missed, pending as
    neither.  Applies to members referenced by some attendance record and
    to members that already carry ledger fields.
    """
    rule = "attendance_ledger"
    attended: dict[str, list[str]] = {}
    missed: dict[str, list[str]] = {}
    referenced: set[str] = set()

    for performance in _records(state.get(CollectionKey.PERFORMANCES, [])):
        for attendance in performance.get("attendance") or []:
            if not isinstance(attendance, dict):
                continue
            member_id = attendance.get("memberId")
            if not _is_ref(member_id):
                continue
            referenced.add(member_id)
            status = attendance.get("status")
            if status == AttendanceStatus.CONFIRMED:
                attended.setdefault(member_id, []).append(performance["id"])
            elif status == AttendanceStatus.ABSENT:
                missed.setdefault(member_id, []).append(performance["id"])

    drifts: list[ReferentialDrift] = []
    for member in _records(state.get(CollectionKey.MEMBERS, [])):
        member_id = member["id"]
        if member_id not in referenced and not any(f in member for f in _LEDGER_FIELDS):
            continue

        went = _reconcile_list(member.get("attendedPerformances"), attended.get(member_id, []))
        skipped = _reconcile_list(member.get("missedPerformances"), missed.get(member_id, []))
        stats = _performance_stats(len(went), len(skipped))
        if (
            member.get("attendedPerformances") == went
            and member.get("missedPerformances") == skipped
            and member.get("performanceStats") == stats
        ):
            continue

        member["attendedPerformances"] = went
        member["missedPerformances"] = skipped
        member["performanceStats"] = stats
        drifts.append(_drift(
            rule, CollectionKey.MEMBERS, member_id,
            f"Attendance ledger recomputed: {stats['attended']} attended, "
            f"{stats['missed']} missed.",
        ))

    return drifts


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

DEFAULT_RULES: tuple[CrossReferenceRule, ...] = (
    CrossReferenceRule(
        name="inventory_assignment",
        forward_collection=CollectionKey.INVENTORY,
        forward_field="assignedTo",
        back_collection=CollectionKey.MEMBERS,
        back_field="assignedInventory",
        cardinality=Cardinality.MANY_TO_ONE,
        apply=reconcile_inventory_assignments,
    ),
    CrossReferenceRule(
        name="transport_roster",
        forward_collection=CollectionKey.PERFORMANCES,
        forward_field="attendance.transportAssignment",
        back_collection=CollectionKey.PERFORMANCES,
        back_field="transport.passengers",
        cardinality=Cardinality.MANY_TO_ONE,
        apply=reconcile_transport_rosters,
    ),
    CrossReferenceRule(
        name="derived_contracts",
        forward_collection=CollectionKey.PERFORMANCES,
        forward_field="contracts",
        back_collection=CollectionKey.CONTRACTS,
        back_field="sourcePerformanceId",
        cardinality=Cardinality.DERIVED,
        apply=reconcile_derived_contracts,
    ),
    CrossReferenceRule(
        name="attendance_ledger",
        forward_collection=CollectionKey.PERFORMANCES,
        forward_field="attendance.memberId",
        back_collection=CollectionKey.MEMBERS,
        back_field="attendedPerformances",
        cardinality=Cardinality.DERIVED,
        apply=reconcile_attendance_ledger,
    ),
)
