"""
Matola - Remaining Invariants: Payments, Ratings
Version: 1.0.0

Financial invariants (amount, fee, net, idempotency, escrow) and
rating eligibility. Payment confirmation is gated on a verified provider
webhook.
"""

import logging
import math
from typing import Any, Dict, Optional

from matola_config import MatolaSettings, get_settings
from matola_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    EntityEnforcer,
    EnforcementReport,
    Forbidden,
    InvariantViolation,
    MatolaError,
    SignatureMismatch,
    ValidationError
)
from matola_invariants_v1 import StatusTransitionAllowed, coerce_enum, is_positive_number
from matola_models_v1 import (
    PAYMENT_TRANSITIONS,
    RATING_MAX,
    RATING_MIN,
    EscrowStatus,
    Match,
    MatchStatus,
    Payment,
    PaymentStatus,
    Rating,
    find_escrow_transition,
)
from matola_persistence_v1 import MatolaRepository
from matola_webhook_v1 import WebhookNotReplayed

logger = logging.getLogger("matola.payments")

NET_AMOUNT_TOLERANCE_MWK = 0.01

# ============================================
# PAYMENT INVARIANTS
# ============================================

class PositiveAmount(Invariant):
    error_class = ValidationError
    code = "INVALID_AMOUNT"

    def __init__(self):
        super().__init__(
            id="pay_001_positive_amount",
            statement="Payment amount must be positive",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="payment_service"
        )

    def pre_check(self, amount_mwk: Any = None, **kwargs) -> bool:
        return is_positive_number(amount_mwk)


def expected_payment_amount(shipment_id: str, repository: MatolaRepository) -> Optional[float]:
    """Agreed price of the active or completed match, else the shipment's own price."""
    match = repository.get_priced_match(shipment_id)
    if match is not None and match.agreed_price_mwk is not None:
        return match.agreed_price_mwk
    shipment = repository.get_shipment(shipment_id)
    return shipment.price_mwk if shipment is not None else None


class AmountMatchesShipment(Invariant):
    """Payment amount equals the agreed price within tolerance."""

    code = "AMOUNT_MISMATCH"

    def __init__(self):
        super().__init__(
            id="pay_002_amount_matches_shipment",
            statement="Payment amount does not match the agreed price",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=["pay_001_positive_amount"],
            owner="payment_service"
        )

    def pre_check(self, shipment_id: str = None, amount_mwk: Any = None, tolerance_mwk: float = 1.0,
                  repository: MatolaRepository = None, **kwargs) -> bool:
        expected = expected_payment_amount(shipment_id, repository)
        if expected is None or not is_positive_number(amount_mwk):
            return False
        matches = abs(amount_mwk - expected) <= tolerance_mwk
        logger.info(f"PRE-CHECK {self.id}: expected={expected:,.2f}, actual={amount_mwk:,.2f}, matches={matches}")
        return matches

    def violation(self, shipment_id: str = None, amount_mwk: Any = None,
                  repository: MatolaRepository = None, **kwargs) -> MatolaError:
        if repository.get_shipment(shipment_id) is None:
            return InvariantViolation(f"Shipment {shipment_id} not found", code="SHIPMENT_NOT_FOUND")
        expected = expected_payment_amount(shipment_id, repository)
        if expected is None:
            return InvariantViolation("No agreed price for shipment", code="PRICE_NOT_AGREED")
        return InvariantViolation(
            f"Payment amount {amount_mwk} does not match agreed price {expected}",
            code=self.code
        )


class FeeWithinLimit(Invariant):
    error_class = ValidationError
    code = "FEE_LIMIT_EXCEEDED"

    def __init__(self):
        super().__init__(
            id="pay_003_fee_within_limit",
            statement="Platform fee exceeds the allowed share of the amount",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.IMPORTANT,
            dependencies=["pay_001_positive_amount"],
            owner="payment_service"
        )

    def pre_check(self, amount_mwk: Any = None, platform_fee_mwk: Any = 0.0, fee_limit: float = 0.10,
                  **kwargs) -> bool:
        if isinstance(platform_fee_mwk, bool) or not isinstance(platform_fee_mwk, (int, float)):
            return False
        if not is_positive_number(amount_mwk):
            return False
        return 0 <= platform_fee_mwk <= amount_mwk * fee_limit


class NetAmountConsistent(Invariant):
    error_class = ValidationError
    code = "NET_AMOUNT_MISMATCH"

    def __init__(self):
        super().__init__(
            id="pay_004_net_amount_consistent",
            statement="Net amount must equal amount minus platform fee",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.IMPORTANT,
            dependencies=["pay_003_fee_within_limit"],
            owner="payment_service"
        )

    def pre_check(self, amount_mwk: Any = None, platform_fee_mwk: Any = 0.0, net_amount_mwk: Any = None,
                  **kwargs) -> bool:
        try:
            diff = abs(net_amount_mwk - (amount_mwk - platform_fee_mwk))
        except TypeError:
            return False
        return math.isfinite(diff) and diff <= NET_AMOUNT_TOLERANCE_MWK


class IdempotencyKeyUnused(Invariant):
    """Every payment request carries a key that has not been used before."""

    code = "DUPLICATE_PAYMENT"

    def __init__(self):
        super().__init__(
            id="pay_005_idempotency_key_unused",
            statement="Duplicate payment request",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="payment_service"
        )

    def pre_check(self, idempotency_key: Optional[str] = None, repository: MatolaRepository = None,
                  **kwargs) -> bool:
        if not idempotency_key:
            return False
        return not repository.idempotency_key_used(idempotency_key)

    def violation(self, idempotency_key: Optional[str] = None, **kwargs) -> MatolaError:
        if not idempotency_key:
            return ValidationError("Idempotency key required", code="MISSING_IDEMPOTENCY_KEY")
        return InvariantViolation(self.statement, code=self.code)


class EscrowTransitionAllowed(Invariant):
    """Escrow moves only through named actions, each restricted to certain roles."""

    code = "INVALID_TRANSITION"

    def __init__(self):
        super().__init__(
            id="pay_006_escrow_transition",
            statement="Escrow action not allowed from current state",
            type=InvariantType.TRANSITION,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="escrow_service"
        )

    def pre_check(self, escrow_status: Any = None, action: str = None, role: Any = None, **kwargs) -> bool:
        escrow_status = coerce_enum(EscrowStatus, escrow_status, "INVALID_STATUS")
        transition = find_escrow_transition(escrow_status, action)
        return transition is not None and getattr(role, "value", role) in transition.allowed_roles

    def violation(self, escrow_status: Any = None, action: str = None, role: Any = None, **kwargs) -> MatolaError:
        escrow_status = coerce_enum(EscrowStatus, escrow_status, "INVALID_STATUS")
        if find_escrow_transition(escrow_status, action) is None:
            return InvariantViolation(
                f"Escrow action {action} not allowed from {escrow_status.value}",
                code=self.code
            )
        return Forbidden(
            f"Role {getattr(role, 'value', role)} may not perform {action}",
            code="INSUFFICIENT_ROLE"
        )


class FundsNotReleased(Invariant):
    code = "FUNDS_ALREADY_RELEASED"

    def __init__(self):
        super().__init__(
            id="pay_007_funds_not_released",
            statement="Escrow funds have already been paid out",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="escrow_service"
        )

    def pre_check(self, escrow_status: Any = None, **kwargs) -> bool:
        escrow_status = coerce_enum(EscrowStatus, escrow_status, "INVALID_STATUS")
        return escrow_status not in (EscrowStatus.RELEASED, EscrowStatus.REFUNDED)


class ConfirmationWebhookVerified(Invariant):
    """A payment becomes confirmed only on an authenticated provider callback."""

    error_class = SignatureMismatch
    code = "INVALID_SIGNATURE"

    def __init__(self):
        super().__init__(
            id="pay_008_confirmation_verified",
            statement="Payment confirmation requires a verified webhook",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="payment_service"
        )

    def pre_check(self, webhook_verified: bool = False, **kwargs) -> bool:
        return webhook_verified is True

# ============================================
# RATING INVARIANTS
# ============================================

class RatingScoreInRange(Invariant):
    error_class = ValidationError
    code = "INVALID_RATING"

    def __init__(self):
        super().__init__(
            id="rat_001_score_in_range",
            statement=f"Rating must be an integer between {RATING_MIN} and {RATING_MAX}",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="rating_service"
        )

    def pre_check(self, score: Any = None, **kwargs) -> bool:
        if isinstance(score, bool) or not isinstance(score, int):
            return False
        return RATING_MIN <= score <= RATING_MAX


class NotSelfRating(Invariant):
    error_class = ValidationError
    code = "SELF_RATING"

    def __init__(self):
        super().__init__(
            id="rat_002_not_self_rating",
            statement="Users cannot rate themselves",
            type=InvariantType.STATE,
            criticality=Criticality.IMPORTANT,
            dependencies=[],
            owner="rating_service"
        )

    def pre_check(self, rater_id: str = None, ratee_id: str = None, **kwargs) -> bool:
        return rater_id != ratee_id


class MatchCompleted(Invariant):
    code = "RATING_NOT_ELIGIBLE"

    def __init__(self):
        super().__init__(
            id="rat_003_match_completed",
            statement="Only completed matches can be rated",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="rating_service"
        )

    def pre_check(self, match_id: str = None, repository: MatolaRepository = None, **kwargs) -> bool:
        match = repository.get_match(match_id)
        return match is not None and match.status == MatchStatus.COMPLETED


def match_participants(match: Match, repository: MatolaRepository) -> Dict[str, str]:
    """Role -> user id of the two parties to a match."""
    participants = {'transporter': match.transporter_id}
    shipment = repository.get_shipment(match.shipment_id)
    if shipment is not None:
        participants['shipper'] = shipment.shipper_id
    return participants


class RaterIsParticipant(Invariant):
    """Rater must be a party to the match, and the ratee the other party."""

    error_class = Forbidden
    code = "NOT_PARTICIPANT"

    def __init__(self):
        super().__init__(
            id="rat_004_rater_participant",
            statement="Only participants of the match can rate it",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=["rat_003_match_completed"],
            owner="rating_service"
        )

    def pre_check(self, match_id: str = None, rater_id: str = None, ratee_id: Optional[str] = None,
                  repository: MatolaRepository = None, **kwargs) -> bool:
        match = repository.get_match(match_id)
        if match is None:
            return False
        parties = set(match_participants(match, repository).values())
        if rater_id not in parties:
            return False
        return ratee_id is None or (ratee_id in parties and ratee_id != rater_id)

    def violation(self, match_id: str = None, rater_id: str = None, ratee_id: Optional[str] = None,
                  repository: MatolaRepository = None, **kwargs) -> MatolaError:
        match = repository.get_match(match_id)
        if match is not None and rater_id in match_participants(match, repository).values():
            return ValidationError("Ratee must be the other party to the match", code="INVALID_RATEE")
        return Forbidden(self.statement, code=self.code)


class SingleRatingPerMatch(Invariant):
    code = "DUPLICATE_RATING"

    def __init__(self):
        super().__init__(
            id="rat_005_single_rating",
            statement="Match already rated by this user",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.IMPORTANT,
            dependencies=["rat_004_rater_participant"],
            owner="rating_service"
        )

    def pre_check(self, match_id: str = None, rater_id: str = None, repository: MatolaRepository = None,
                  **kwargs) -> bool:
        return not repository.rating_exists(match_id, rater_id)

# ============================================
# ENFORCERS
# ============================================

class PaymentInvariantEnforcer(EntityEnforcer):
    def __init__(self, repository: MatolaRepository, settings: Optional[MatolaSettings] = None):
        self.repository = repository
        self.settings = settings or get_settings()
        self.amount = PositiveAmount()
        self.matches_shipment = AmountMatchesShipment()
        self.fee = FeeWithinLimit()
        self.net = NetAmountConsistent()
        self.idempotency = IdempotencyKeyUnused()
        self.escrow = EscrowTransitionAllowed()
        self.not_released = FundsNotReleased()
        self.webhook = ConfirmationWebhookVerified()
        self.replay = WebhookNotReplayed()
        self.transition = StatusTransitionAllowed(
            "pay_009_status_transition", "payment", PaymentStatus, PAYMENT_TRANSITIONS, "payment_service"
        )

    def assert_positive_amount(self, amount_mwk: Any):
        self.require(self.amount, amount_mwk=amount_mwk)

    def assert_amount_matches_shipment(self, payment: Payment):
        self.require(self.matches_shipment, shipment_id=payment.shipment_id, amount_mwk=payment.amount_mwk,
                     tolerance_mwk=self.settings.PAYMENT_TOLERANCE_MWK, repository=self.repository)

    def assert_fee_limit(self, amount_mwk: Any, platform_fee_mwk: Any):
        self.require(self.fee, amount_mwk=amount_mwk, platform_fee_mwk=platform_fee_mwk,
                     fee_limit=self.settings.PLATFORM_FEE_LIMIT)

    def assert_net_amount(self, amount_mwk: Any, platform_fee_mwk: Any, net_amount_mwk: Any):
        self.require(self.net, amount_mwk=amount_mwk, platform_fee_mwk=platform_fee_mwk,
                     net_amount_mwk=net_amount_mwk)

    def assert_idempotency_key(self, idempotency_key: Optional[str]):
        self.require(self.idempotency, idempotency_key=idempotency_key, repository=self.repository)

    def assert_escrow_transition(self, current: Any, action: str, role: Any):
        self.require(self.escrow, escrow_status=current, action=action, role=role)

    def assert_not_released(self, escrow_status: Any):
        self.require(self.not_released, escrow_status=escrow_status)

    def assert_status_transition(self, current: Any, new: Any):
        self.require(self.transition, current=current, new=new)

    def assert_can_confirm(self, payment: Payment, webhook_verified: bool):
        self.require(self.webhook, webhook_verified=webhook_verified)
        self.assert_status_transition(payment.status, PaymentStatus.CONFIRMED)

    def assert_webhook_not_replayed(self, idempotency_key: str):
        self.require(self.replay, idempotency_key=idempotency_key, repository=self.repository)

    def check_all(self, payment: Payment) -> EnforcementReport:
        amounts = {
            'amount_mwk': payment.amount_mwk,
            'platform_fee_mwk': payment.platform_fee_mwk,
            'net_amount_mwk': payment.net_amount_mwk,
        }
        return self.evaluate([
            (self.amount, amounts),
            (self.fee, {**amounts, 'fee_limit': self.settings.PLATFORM_FEE_LIMIT}),
            (self.net, amounts),
            (self.matches_shipment, {
                'shipment_id': payment.shipment_id,
                'amount_mwk': payment.amount_mwk,
                'tolerance_mwk': self.settings.PAYMENT_TOLERANCE_MWK,
                'repository': self.repository,
            }),
            (self.idempotency, {'idempotency_key': payment.idempotency_key, 'repository': self.repository}),
        ])

    def assert_on_create(self, payment: Payment):
        self.check_all(payment).raise_first()


class RatingInvariantEnforcer(EntityEnforcer):
    def __init__(self, repository: MatolaRepository):
        self.repository = repository
        self.score = RatingScoreInRange()
        self.not_self = NotSelfRating()
        self.completed = MatchCompleted()
        self.participant = RaterIsParticipant()
        self.single = SingleRatingPerMatch()

    def assert_score_range(self, score: Any):
        self.require(self.score, score=score)

    def assert_not_self_rating(self, rater_id: str, ratee_id: str):
        self.require(self.not_self, rater_id=rater_id, ratee_id=ratee_id)

    def assert_match_completed(self, match_id: str):
        self.require(self.completed, match_id=match_id, repository=self.repository)

    def assert_rater_participant(self, match: Match, rater_id: str, ratee_id: Optional[str] = None):
        self.require(self.participant, match_id=match.id, rater_id=rater_id, ratee_id=ratee_id,
                     repository=self.repository)

    def assert_single_rating(self, match_id: str, rater_id: str):
        self.require(self.single, match_id=match_id, rater_id=rater_id, repository=self.repository)

    def check_all(self, rating: Rating) -> EnforcementReport:
        kwargs = {
            'score': rating.score,
            'match_id': rating.match_id,
            'rater_id': rating.rater_id,
            'ratee_id': rating.ratee_id,
            'repository': self.repository,
        }
        return self.evaluate([
            (inv, kwargs) for inv in (self.score, self.not_self, self.completed, self.participant, self.single)
        ])

    def assert_on_create(self, rating: Rating):
        self.check_all(rating).raise_first()
