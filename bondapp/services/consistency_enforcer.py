"""
Consistency Enforcer.

Runs the cross-reference rules of :mod:`bondapp.services.reference_rules`
against the local state and persists the corrections through the
orchestrator, so a repaired collection is synchronised like any other
write.

Two entry points:

``repair(key, data)``
    Called by the orchestrator *before* it persists a write.  Returns the
    write plus every partner collection the rules had to correct; the
    orchestrator commits them together, so no half-repaired state reaches
    the local store.
``enforce(keys=None)``
    Repairs what is already stored (after a full sync, or after a remote
    record was applied) and saves the corrections.

A rule only runs once every collection it touches has been loaded on this
device.  Healing against a collection that is still ``UNLOADED`` or
``LOADING`` would treat its empty placeholder as truth and, for example,
release every inventory item because no members are known yet.

Every correction is logged at warning level and written to ``audit_log``.
Drift is never raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Mapping, Optional, Sequence

from bondapp.errors import ReferentialDrift
from bondapp.logger import StructuredLogger
from bondapp.models.enums import SyncPhase
from bondapp.models.sync_models import Collection, Session
from bondapp.repositories.snapshot_repository import SnapshotRepository
from bondapp.services.base_service import BaseService
from bondapp.services.reference_rules import DEFAULT_RULES, CrossReferenceRule
from bondapp.utils.audit import log_audit_event
from bondapp.utils.general import clone_collection, convert_to_json_safe

if TYPE_CHECKING:
    from bondapp.services.sync_orchestrator import SyncOrchestrator

_NOT_READY: frozenset[SyncPhase] = frozenset({SyncPhase.UNLOADED, SyncPhase.LOADING})


class ConsistencyEnforcer(BaseService):
    """Applies cross-reference rules and writes repairs back.

    Parameters
    ----------
    store:
        Local snapshot store; partner collections are read from it.
    orchestrator:
        Orchestrator used for phase checks and for saving repairs.
    session:
        Identity recorded on audit rows.
    logger:
        Structured logger.
    rules:
        Rule table, ``DEFAULT_RULES`` unless overridden.
    """

    def __init__(
        self,
        store: SnapshotRepository,
        orchestrator: "SyncOrchestrator",
        session: Session,
        logger: StructuredLogger,
        rules: Sequence[CrossReferenceRule] = DEFAULT_RULES,
    ) -> None:
        super().__init__(logger)
        self._store = store
        self._orchestrator = orchestrator
        self._session = session
        self._rules: tuple[CrossReferenceRule, ...] = tuple(rules)

    @property
    def rules(self) -> tuple[CrossReferenceRule, ...]:
        return self._rules

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def repair(self, key: str, data: Collection) -> dict[str, Collection]:
        """Repair a pending write of *data* to *key*.

        Returns a mapping that always contains *key* (possibly corrected)
        plus each partner collection that needed a correction.  Nothing is
        written to the snapshot store except audit rows.

        Raises:
            StorageFailure: If a partner collection cannot be read.
        """
        return self.repair_many({key: data})

    def repair_many(self, changes: Mapping[str, Collection]) -> dict[str, Collection]:
        """Like :meth:`repair` for several pending writes at once."""
        pending = {key: clone_collection(convert_to_json_safe(list(data))) for key, data in changes.items()}
        rules = [
            rule for rule in self._rules
            if set(rule.collections) & pending.keys() and self._is_ready(rule, exempt=pending.keys())
        ]
        if not rules:
            return pending

        state, originals = self._build_state(rules, pending)
        drifts = self._apply(rules, state)

        result = dict(pending)
        for key, data in state.items():
            if key in pending or data != originals[key]:
                result[key] = data
        self._record(drifts)
        return result

    def enforce(self, keys: Optional[Iterable[str]] = None) -> dict[str, Collection]:
        """Repair the stored state of *keys* (all collections when ``None``).

        Returns the corrected collections, which have also been saved.

        Raises:
            StorageFailure: If a collection cannot be read or a repair
                cannot be persisted.
        """
        wanted = None if keys is None else set(keys)
        rules = [
            rule for rule in self._rules
            if (wanted is None or set(rule.collections) & wanted) and self._is_ready(rule)
        ]
        if not rules:
            return {}

        state, originals = self._build_state(rules, {})
        drifts = self._apply(rules, state)
        changed = {key: data for key, data in state.items() if data != originals[key]}
        if not changed:
            return {}

        self._record(drifts)
        self._orchestrator.save_many(changed, reconcile=False)
        self._logger.info("Consistency repairs saved for: %s", ", ".join(sorted(changed)))
        return changed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_ready(self, rule: CrossReferenceRule, exempt: Iterable[str] = ()) -> bool:
        exempt_keys = set(exempt)
        for key in rule.collections:
            if key in exempt_keys:
                continue
            if self._orchestrator.phase(key) in _NOT_READY:
                self._logger.debug(
                    "Rule %s skipped: %s is %s.", rule.name, key, self._orchestrator.phase(key),
                )
                return False
        return True

    def _build_state(
        self,
        rules: Sequence[CrossReferenceRule],
        pending: Mapping[str, Collection],
    ) -> tuple[dict[str, Collection], dict[str, Collection]]:
        state: dict[str, Collection] = {key: clone_collection(data) for key, data in pending.items()}
        for rule in rules:
            for key in rule.collections:
                if key in state:
                    continue
                snapshot = self._store.read(key)
                state[key] = clone_collection(snapshot.data) if snapshot is not None else []
        originals = {key: clone_collection(data) for key, data in state.items()}
        return state, originals

    def _apply(
        self,
        rules: Sequence[CrossReferenceRule],
        state: dict[str, Collection],
    ) -> list[ReferentialDrift]:
        drifts: list[ReferentialDrift] = []
        for rule in rules:
            drifts.extend(rule.apply(state))
        return drifts

    def _record(self, drifts: Sequence[ReferentialDrift]) -> None:
        if not drifts:
            return
        with self._store.batch():
            for drift in drifts:
                self._logger.warning(
                    "Referential drift repaired [%s] %s/%s: %s",
                    drift.rule, drift.collection, drift.entity_id, drift.message,
                )
                log_audit_event(
                    self._logger,
                    action="REPAIR",
                    entity_type=str(drift.collection),
                    entity_id=drift.entity_id,
                    device_id=self._session.device_id,
                    details={"rule": drift.rule, "message": drift.message},
                    conn=self._store.sqlite,
                )
