"""
Matola - Invariant Enforcement Layer
Version: 1.0.0

Core of the validation layer: the typed error taxonomy, the Invariant base
class, the signed decision ledger and the InvariantEnforcer that wraps a
persistence action with pre-checks, post-checks and rollback.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Type
from enum import Enum
import hmac
import hashlib
import logging
import threading
from abc import ABC, abstractmethod

from matola_metrics import record_invariant_check, record_rollback, update_ledger_integrity

logger = logging.getLogger("matola.enforcement")

# ============================================
# CLASSIFICATION
# ============================================

class InvariantType(Enum):
    STATE = "state"
    TRANSITION = "transition"
    TEMPORAL = "temporal"
    SECURITY = "security"
    FINANCIAL = "financial"
    DATA_INTEGRITY = "data_integrity"

class Criticality(Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    OPTIONAL = "optional"

class EnforcementResult(Enum):
    PROCEED = "proceed"
    ROLLBACK = "rollback"
    FREEZE = "freeze"

# ============================================
# EXCEPTIONS
# ============================================

class MatolaError(Exception):
    """Base of the closed error taxonomy.

    Every error carries a machine-readable code, a human message and the
    HTTP status the route handler should answer with.
    """
    default_code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str = "Internal server error", code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_response(self) -> Dict[str, str]:
        """Response body for the route handler. Never includes internals."""
        return {'error': self.message, 'code': self.code}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"

class ValidationError(MatolaError):
    """Malformed or out-of-range input."""
    default_code = "VALIDATION_ERROR"
    http_status = 400

class OutOfRegion(ValidationError):
    """Coordinate outside the serviced region."""
    default_code = "OUT_OF_REGION"

class InvariantViolation(MatolaError):
    """State-consistency breach (duplicate active match, illegal transition...)."""
    default_code = "INVARIANT_VIOLATION"
    http_status = 409

class Unauthorized(MatolaError):
    default_code = "UNAUTHORIZED"
    http_status = 401

class Forbidden(MatolaError):
    default_code = "FORBIDDEN"
    http_status = 403

class SignatureMismatch(MatolaError):
    """Inbound webhook failed authenticity verification."""
    default_code = "INVALID_SIGNATURE"
    http_status = 401

class SystemCompromised(MatolaError):
    """Raised when rollback fails or the decision ledger is tampered with."""
    default_code = "SYSTEM_COMPROMISED"
    http_status = 500

# ============================================
# ENFORCEMENT DECISION RECORD
# ============================================

@dataclass(frozen=True)
class EnforcementDecision:
    """Immutable record of enforcement decision."""
    invariant_id: str
    check_type: str  # "PRE" | "POST"
    result: bool
    action: EnforcementResult
    timestamp: datetime
    signature: str = ""

    def signing_payload(self) -> str:
        return f"{self.invariant_id}:{self.check_type}:{self.result}:{self.action.value}:{self.timestamp.isoformat()}"

# ============================================
# DECISION LEDGER
# ============================================

class DecisionLedger:
    """Append-only, HMAC-signed ledger of enforcement decisions."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("DecisionLedger requires a signing secret")
        self._secret = secret.encode()
        self._entries: List[EnforcementDecision] = []
        self._lock = threading.Lock()

    @property
    def entries(self) -> List[EnforcementDecision]:
        with self._lock:
            return list(self._entries)

    def sign(self, invariant_id: str, check_type: str, result: bool, action: EnforcementResult) -> EnforcementDecision:
        """Build a signed decision stamped with the current time."""
        unsigned = EnforcementDecision(
            invariant_id=invariant_id,
            check_type=check_type,
            result=result,
            action=action,
            timestamp=datetime.now()
        )
        signature = hmac.new(self._secret, unsigned.signing_payload().encode(), hashlib.sha256).hexdigest()
        return EnforcementDecision(
            invariant_id=unsigned.invariant_id,
            check_type=unsigned.check_type,
            result=unsigned.result,
            action=unsigned.action,
            timestamp=unsigned.timestamp,
            signature=signature
        )

    def verify(self, decision: EnforcementDecision) -> bool:
        expected = hmac.new(self._secret, decision.signing_payload().encode(), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, decision.signature)

    def record(self, decision: EnforcementDecision):
        """Append decision to ledger (write-only)."""
        if not self.verify(decision):
            update_ledger_integrity(False)
            raise SystemCompromised("Invalid signature on enforcement decision")

        with self._lock:
            self._entries.append(decision)
        logger.debug(f"LEDGER: Recorded {decision.check_type} for {decision.invariant_id}: {decision.result}")

    def verify_chain_integrity(self) -> bool:
        """Verify ledger has not been tampered with."""
        intact = all(self.verify(entry) for entry in self.entries)
        update_ledger_integrity(intact)
        return intact

    def health_score(self) -> float:
        """Share of recorded checks that passed (1.0 when empty)."""
        entries = self.entries
        if not entries:
            return 1.0
        return sum(1 for e in entries if e.result) / len(entries)

# ============================================
# BASE INVARIANT CLASS
# ============================================

class Invariant(ABC):
    """Base class for all invariants.

    Subclasses implement pre_check(**kwargs) -> bool. A failed check is
    turned into the typed error returned by violation(), so route handlers
    get a stable code and status without re-deriving semantics.
    """

    error_class: Type[MatolaError] = InvariantViolation
    code: Optional[str] = None

    def __init__(
        self,
        id: str,
        statement: str,
        type: InvariantType,
        criticality: Criticality,
        dependencies: List[str],
        owner: str
    ):
        self.id = id
        self.statement = statement
        self.type = type
        self.criticality = criticality
        self.dependencies = dependencies
        self.owner = owner

    @abstractmethod
    def pre_check(self, **kwargs) -> bool:
        """Execute before action. Returns True if action can proceed."""

    def post_check(self, result: Any, **kwargs) -> bool:
        """Execute after action. Returns True if invariant still holds."""
        return True

    def rollback_action(self, state_before: Dict[str, Any]):
        """Undo the action. The validation layer itself persists nothing."""

    def describe(self, **kwargs) -> str:
        """Human readable failure message. Override for detail."""
        return self.statement

    def violation(self, **kwargs) -> MatolaError:
        return self.error_class(self.describe(**kwargs), code=self.code)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"

# ============================================
# ENTITY ENFORCER BASE
# ============================================

@dataclass
class EnforcementReport:
    """Outcome of evaluating several invariants without failing fast."""
    violations: List[MatolaError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.violations

    @property
    def messages(self) -> List[str]:
        return [v.message for v in self.violations]

    def raise_first(self):
        if self.violations:
            raise self.violations[0]


Check = Tuple[Invariant, Dict[str, Any]]


class EntityEnforcer:
    """Shared plumbing for the per-entity enforcers."""

    def require(self, invariant: Invariant, **kwargs):
        """Run one pre-check; raise its typed error if it fails."""
        passed = invariant.pre_check(**kwargs)
        record_invariant_check(invariant.id, "PRE", passed, invariant.criticality.value)
        if not passed:
            error = invariant.violation(**kwargs)
            logger.warning(f"VIOLATION {invariant.id}: {error.code}: {error.message}")
            raise error

    def evaluate(self, checks: List[Check]) -> EnforcementReport:
        """Run every check, collecting violations instead of raising."""
        report = EnforcementReport()
        for invariant, kwargs in checks:
            try:
                self.require(invariant, **kwargs)
            except MatolaError as e:
                report.violations.append(e)
        return report

# ============================================
# INVARIANT ENFORCER
# ============================================

class InvariantEnforcer:
    """Wraps a persistence action with invariant enforcement.

    Pre-checks run in dependency order and the action runs only if all of
    them pass. Post-checks run on the action's result; a failed post-check
    rolls back in reverse order and raises InvariantViolation.
    """

    def __init__(self, invariants: List[Invariant], ledger: Optional[DecisionLedger] = None):
        self.invariants = invariants
        self.ledger = ledger
        self.ordered = self._topological_sort(invariants)

    def _topological_sort(self, invariants: List[Invariant]) -> List[Invariant]:
        """Sort invariants by dependency order."""
        known = {inv.id for inv in invariants}
        sorted_invs = []
        remaining = set(known)

        while remaining:
            # Dependencies outside this enforcer's set are treated as satisfied
            ready = [
                inv for inv in invariants
                if inv.id in remaining and all(dep not in remaining for dep in inv.dependencies if dep in known)
            ]

            if not ready:
                raise SystemCompromised(f"Circular dependency detected in invariants: {sorted(remaining)}")

            sorted_invs.extend(ready)
            for inv in ready:
                remaining.remove(inv.id)

        return sorted_invs

    def enforce_action(self, action: Callable[..., Any], **kwargs) -> Any:
        """Execute action with full invariant enforcement."""
        state_before = self._capture_state(kwargs)

        # PRE-ACTION CHECKS (in dependency order)
        for inv in self.ordered:
            passed = self._pre_check(inv, **kwargs)
            if not passed:
                logger.error(f"PRE-CHECK FAILED: {inv.id}")
                raise inv.violation(**kwargs)

        # Execute action
        try:
            result = action(**kwargs)
        except Exception as e:
            logger.error(f"ACTION FAILED: {e}")
            self._rollback(state_before, self.ordered, reason="action_failed")
            raise

        # POST-ACTION CHECKS (in dependency order)
        for inv in self.ordered:
            if not self._post_check(inv, result, **kwargs):
                logger.error(f"POST-CHECK FAILED: {inv.id}")
                self._rollback(state_before, self.ordered, reason=inv.id)
                raise InvariantViolation(f"Post-check failed: {inv.id}", code="POST_CHECK_FAILED")

        logger.info(f"All {len(self.ordered)} invariant checks PASSED")
        return result

    def _pre_check(self, inv: Invariant, **kwargs) -> bool:
        """Execute pre-action check. Lookup failures count as violations."""
        try:
            result = bool(inv.pre_check(**kwargs))
        except MatolaError:
            self._record(inv, "PRE", False, EnforcementResult.FREEZE)
            raise
        except Exception as e:
            logger.error(f"Pre-check exception: {inv.id}", exc_info=e)
            result = False

        action = EnforcementResult.PROCEED if result else EnforcementResult.FREEZE
        self._record(inv, "PRE", result, action)
        logger.info(f"PRE-CHECK {inv.id}: valid={result}")
        return result

    def _post_check(self, inv: Invariant, result: Any, **kwargs) -> bool:
        """Execute post-action check."""
        try:
            check_result = bool(inv.post_check(result, **kwargs))
        except Exception as e:
            logger.error(f"Post-check exception: {inv.id}", exc_info=e)
            check_result = False

        action = EnforcementResult.PROCEED if check_result else EnforcementResult.ROLLBACK
        self._record(inv, "POST", check_result, action)
        logger.info(f"POST-CHECK {inv.id}: valid={check_result}")
        return check_result

    def _rollback(self, state_before: Dict[str, Any], invariants: List[Invariant], reason: str):
        """Roll back in reverse dependency order."""
        logger.warning("ROLLBACK INITIATED")
        record_rollback(reason)

        for inv in reversed(invariants):
            try:
                inv.rollback_action(state_before)
            except Exception as e:
                logger.critical(f"ROLLBACK FAILED for {inv.id}: {e}")
                raise SystemCompromised(f"Rollback failed for {inv.id}") from e

        logger.info("ROLLBACK COMPLETE")

    def _record(self, inv: Invariant, check_type: str, result: bool, action: EnforcementResult):
        record_invariant_check(inv.id, check_type, result, inv.criticality.value)
        if self.ledger is not None:
            self.ledger.record(self.ledger.sign(inv.id, check_type, result, action))

    def _capture_state(self, kwargs: Dict) -> Dict[str, Any]:
        """Capture the arguments the action was called with."""
        return {
            'timestamp': datetime.now(),
            **kwargs
        }
