"""
Allocation Policy Engine

Scores divisions by need, risk and learned impact, turns the scores into
constrained target percentages, and plans SC moves from overweight to
underweight division wallets.

    score(div)  = w_need * (100 - composite) + w_risk * risk + w_impact * impact
    target_pct  = clamp(score / sum(score) * 100, min_pct, max_pct), renormalized
    delta_sc    = (target_pct - current_pct) / 100 * total

Core Principles:
1. Simulate by default. Simulation writes run/move rows only.
2. Deterministic: divisions are processed in sorted order, so identical
   inputs always yield identical targets and moves.
3. Moves above the approval threshold are never auto-executed.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ... import config
from ...errors import NotFoundError, PreconditionError, SCEngineError, ValidationError
from ...models.db_models import (
    AllocationPolicyDB,
    DivisionKPIDB,
    RebalanceMoveDB,
    RebalanceRunDB,
    RunMode,
    RunStatus,
    utcnow,
)
from ..governance.approval_queue import ApprovalQueue
from ..learning.weight_updater import current_weights
from ..ledger.wallet_ledger import SYSTEM_WALLET_DIVISION, WalletLedger


logger = logging.getLogger(__name__)


DEAD_BAND_SC = 100.0


@dataclass
class DivisionScoreInput:
    """Scoring inputs for one division."""
    division: str
    composite_score: float
    risk_score: float
    impact_input: float


@dataclass
class PlannedMove:
    """A move produced by the matcher, before persistence."""
    from_division: str
    to_division: str
    amount_sc: float
    reason: str
    requires_approval: bool


# =============================================================================
# PURE PLANNING FUNCTIONS
# =============================================================================

def score_division(item: DivisionScoreInput, weights: Dict[str, float]) -> float:
    return (
        weights.get("need", 0.0) * (100.0 - item.composite_score)
        + weights.get("risk", 0.0) * item.risk_score
        + weights.get("impact", 0.0) * item.impact_input
    )


def compute_target_percentages(
    inputs: List[DivisionScoreInput],
    weights: Dict[str, float],
    min_pct: float,
    max_pct: float,
) -> Dict[str, float]:
    """
    Target percentage per division, summing to 100.

    min_pct/max_pct are fractions (0.05 = 5%). An all-zero or negative score
    total falls back to an equal split.
    """
    ordered = sorted(inputs, key=lambda i: i.division)
    if not ordered:
        return {}

    scores = {i.division: score_division(i, weights) for i in ordered}
    total = sum(scores.values())

    targets = {}
    for division, score in scores.items():
        pct = (score / total * 100.0) if total > 0 else 100.0 / len(ordered)
        targets[division] = max(min_pct * 100.0, min(max_pct * 100.0, pct))

    clamped_total = sum(targets.values())
    if clamped_total <= 0:
        return {division: 100.0 / len(ordered) for division in targets}
    return {division: pct / clamped_total * 100.0 for division, pct in targets.items()}


def match_moves(
    targets: Dict[str, float],
    current_available: Dict[str, float],
    max_move_per_epoch_sc: float,
    require_approval_over_sc: float,
    dead_band_sc: float = DEAD_BAND_SC,
) -> Tuple[List[PlannedMove], float]:
    """
    Greedy matcher from overweight to underweight divisions.

    Returns (moves, total_sc). Only divisions present in `targets` take part;
    a division without a wallet counts as holding 0.
    """
    total = sum(current_available.get(division, 0.0) for division in targets)

    underweight: List[List[Any]] = []
    overweight: List[List[Any]] = []
    for division in sorted(targets):
        current_pct = (current_available.get(division, 0.0) / total * 100.0) if total > 0 else 0.0
        delta_sc = (targets[division] - current_pct) / 100.0 * total
        if delta_sc > dead_band_sc:
            underweight.append([division, delta_sc])
        elif delta_sc < -dead_band_sc:
            overweight.append([division, -delta_sc])

    moves: List[PlannedMove] = []
    moved = 0.0
    for uw in underweight:
        if max_move_per_epoch_sc - moved <= 0:
            break
        for ow in overweight:
            remaining = max_move_per_epoch_sc - moved
            if remaining <= 0:
                break

            amount = round(min(uw[1], ow[1], remaining), 2)
            if amount <= dead_band_sc:
                continue

            moves.append(PlannedMove(
                from_division=ow[0],
                to_division=uw[0],
                amount_sc=amount,
                reason=f"Rebalance: {ow[0]} overweight, {uw[0]} underweight",
                requires_approval=amount > require_approval_over_sc,
            ))
            moved += amount
            ow[1] -= amount
            uw[1] -= amount

    return moves, moved


# =============================================================================
# ENGINE
# =============================================================================

class AllocationPolicyEngine:
    """
    Runs a rebalance under an allocation policy.

    Usage:
        engine = AllocationPolicyEngine(db)
        result = engine.run("default_v1", mode="simulate")
    """

    def __init__(self, db: Session):
        self.db = db
        self.ledger = WalletLedger(db)
        self.approvals = ApprovalQueue(db)

    def run(self, policy_key: Optional[str] = None, mode: str = RunMode.SIMULATE.value) -> Dict[str, Any]:
        policy_key = policy_key or config.DEFAULT_POLICY_KEY
        try:
            run_mode = RunMode(mode)
        except ValueError:
            raise ValidationError(f"Invalid mode: {mode}. Must be simulate or execute")

        policy = self.db.query(AllocationPolicyDB).filter(
            AllocationPolicyDB.policy_key == policy_key,
            AllocationPolicyDB.enabled.is_(True),
        ).first()
        if not policy:
            raise NotFoundError(f"Policy not found or disabled: {policy_key}")

        wallets = self.ledger.list_division_wallets()
        if not wallets:
            raise NotFoundError("No division wallets found")

        inputs = self._score_inputs(policy)
        if not inputs:
            raise PreconditionError("No KPI snapshots available")

        constraints = policy.constraints or {}
        targets = compute_target_percentages(
            inputs,
            policy.weights or {},
            float(constraints.get("min_pct_per_division", 0.0)),
            float(constraints.get("max_pct_per_division", 1.0)),
        )

        wallet_by_division = {w.division: w for w in wallets}
        available = {
            division: wallet_by_division[division].balance - wallet_by_division[division].locked
            for division in targets
            if division in wallet_by_division
        }
        planned, planned_total = match_moves(
            targets,
            available,
            float(constraints.get("max_move_per_epoch_sc", 0.0)),
            float(constraints.get("require_approval_over_sc", float("inf"))),
        )

        run = RebalanceRunDB(
            id=str(uuid4()),
            policy_key=policy_key,
            mode=run_mode,
            status=RunStatus.RUNNING,
            total_available_sc=sum(available.values()),
            target_pcts=targets,
        )
        self.db.add(run)
        self.db.flush()

        move_rows = []
        for plan in planned:
            move = RebalanceMoveDB(
                id=str(uuid4()),
                run_id=run.id,
                from_division=plan.from_division,
                to_division=plan.to_division,
                amount_sc=plan.amount_sc,
                reason=plan.reason,
                requires_approval=plan.requires_approval,
                executed=False,
            )
            self.db.add(move)
            move_rows.append(move)
        self.db.flush()

        errors = []
        if run_mode == RunMode.EXECUTE:
            executed_total, errors = self._execute_moves(run, move_rows)
            run.total_moved_sc = executed_total
            attempted = [m for m in move_rows if not m.requires_approval]
            if errors and len(errors) == len(attempted):
                run.status = RunStatus.FAILED
            elif errors:
                run.status = RunStatus.PARTIAL
            else:
                run.status = RunStatus.SUCCESS
            run.notes = f"Executed {len(attempted) - len(errors)} of {len(move_rows)} moves"
        else:
            run.total_moved_sc = planned_total
            run.status = RunStatus.SUCCESS
            run.notes = f"Simulated {len(move_rows)} moves"

        run.finished_at = utcnow()
        self.db.flush()

        logger.info(f"Rebalance {run_mode.value} run {run.id}: {len(move_rows)} moves, {run.total_moved_sc:.2f} SC")

        return {
            "ok": True,
            "run_id": run.id,
            "mode": run_mode.value,
            "status": run.status.value,
            "targets": targets,
            "moves": [self._move_dict(m) for m in move_rows],
            "total_moved_sc": run.total_moved_sc,
            "errors": errors,
        }

    def execute_approved_move(self, move_id: str) -> Dict[str, Any]:
        """Execute a gated move once its approval entry is approved."""
        move = self.db.query(RebalanceMoveDB).filter(RebalanceMoveDB.id == move_id).first()
        if not move:
            raise NotFoundError(f"Move not found: {move_id}")
        if move.executed:
            raise PreconditionError(f"Move {move_id} already executed")
        if not self.approvals.is_approved(move.approval_id):
            raise PreconditionError(f"Move {move_id} is not approved")

        self._transfer(move)
        move.executed = True
        move.executed_at = utcnow()
        move.run.total_moved_sc = (move.run.total_moved_sc or 0.0) + move.amount_sc
        self.db.flush()

        logger.info(f"Executed approved move {move.id}: {move.amount_sc:.2f} SC")

        return {"ok": True, "move": self._move_dict(move)}

    def get_run(self, run_id: str) -> Dict[str, Any]:
        run = self.db.query(RebalanceRunDB).filter(RebalanceRunDB.id == run_id).first()
        if not run:
            raise NotFoundError(f"Rebalance run not found: {run_id}")
        return {
            "run_id": run.id,
            "policy_key": run.policy_key,
            "mode": run.mode.value,
            "status": run.status.value,
            "total_available_sc": run.total_available_sc,
            "total_moved_sc": run.total_moved_sc,
            "targets": run.target_pcts or {},
            "notes": run.notes,
            "created_at": run.created_at.isoformat() if run.created_at else None,
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
            "impact_evaluated_at": run.impact_evaluated_at.isoformat() if run.impact_evaluated_at else None,
            "moves": [self._move_dict(m) for m in run.moves],
        }

    # =========================================================================
    # Internal
    # =========================================================================

    def _score_inputs(self, policy: AllocationPolicyDB) -> List[DivisionScoreInput]:
        latest: Dict[str, DivisionKPIDB] = {}
        for kpi in self.db.query(DivisionKPIDB).order_by(DivisionKPIDB.captured_at).all():
            if kpi.division != SYSTEM_WALLET_DIVISION:
                latest[kpi.division] = kpi

        impact_default = policy.impact_default if policy.impact_default is not None else 50.0
        impact_scale = policy.impact_scale if policy.impact_scale is not None else 100.0
        learned = current_weights(self.db) if policy.impact_input_mode == "learned" else {}

        inputs = []
        for division in sorted(latest):
            weight = learned.get(division)
            impact = weight.impact_weight * impact_scale if weight else impact_default
            inputs.append(DivisionScoreInput(
                division=division,
                composite_score=latest[division].composite_score,
                risk_score=latest[division].risk_score,
                impact_input=impact,
            ))
        return inputs

    def _execute_moves(self, run: RebalanceRunDB, moves: List[RebalanceMoveDB]) -> Tuple[float, List[Dict[str, Any]]]:
        executed_total = 0.0
        errors = []
        for move in moves:
            if move.requires_approval:
                approval = self.approvals.enqueue(
                    action="execute_rebalance_move",
                    division=move.to_division,
                    payload={
                        "move_id": move.id,
                        "run_id": run.id,
                        "from_division": move.from_division,
                        "to_division": move.to_division,
                        "amount_sc": move.amount_sc,
                    },
                )
                move.approval_id = approval.id
                continue

            try:
                with self.db.begin_nested():
                    self._transfer(move)
                    move.executed = True
                    move.executed_at = utcnow()
                executed_total += move.amount_sc
            except SCEngineError as e:
                logger.warning(f"Move {move.id} failed: {e.message}")
                errors.append({"move_id": move.id, "error": e.message})

        self.db.flush()
        return executed_total, errors

    def _transfer(self, move: RebalanceMoveDB) -> None:
        source = self.ledger.get_division_wallet(move.from_division)
        target = self.ledger.get_division_wallet(move.to_division)
        if not source or not target:
            raise NotFoundError(f"Wallet missing for move {move.from_division} -> {move.to_division}")
        self.ledger.transfer(
            source.id,
            target.id,
            move.amount_sc,
            memo=move.reason,
            is_admin=True,
            ref_id=move.id,
        )

    @staticmethod
    def _move_dict(move: RebalanceMoveDB) -> Dict[str, Any]:
        return {
            "id": move.id,
            "from_division": move.from_division,
            "to_division": move.to_division,
            "amount_sc": move.amount_sc,
            "reason": move.reason,
            "requires_approval": move.requires_approval,
            "approval_id": move.approval_id,
            "executed": move.executed,
        }
