"""
Matola - Invariant Enforcers: Users, Shipments, Matches
Version: 1.0.0

Each enforcer validates exactly one entity type. Cross-entity checks go
through read-only lookups on the injected repository. assert_* methods
return None or raise a typed MatolaError; check_all() collects every
violation without raising.
"""

import logging
import math
from datetime import date
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Type

from matola_config import MatolaSettings, get_settings
from matola_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    EntityEnforcer,
    EnforcementReport,
    InvariantViolation,
    MatolaError,
    ValidationError
)
from matola_geo_v1 import ShipmentCoordinatesInRegion
from matola_models_v1 import (
    MATCH_TRANSITIONS,
    SHIPMENT_TRANSITIONS,
    Match,
    MatchStatus,
    Role,
    Shipment,
    ShipmentStatus,
    User,
    VerificationState,
)
from matola_persistence_v1 import MatolaRepository
from matola_phone_v1 import is_valid_phone

logger = logging.getLogger("matola.invariants")

MATCH_SCORE_MIN = 0
MATCH_SCORE_MAX = 100


def coerce_enum(enum_cls: Type[Enum], value: Any, code: str) -> Enum:
    """Map a raw value onto a closed enum, raising ValidationError otherwise."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {enum_cls.__name__}: {value!r}", code=code)


def is_positive_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0

# ============================================
# SHARED TRANSITION INVARIANT
# ============================================

class StatusTransitionAllowed(Invariant):
    """A status change must follow an edge of the entity's transition graph."""

    code = "INVALID_TRANSITION"

    def __init__(self, id: str, entity: str, status_enum: Type[Enum], graph: Dict[Any, FrozenSet[Any]], owner: str):
        super().__init__(
            id=id,
            statement=f"{entity.capitalize()} status may only change along allowed transitions",
            type=InvariantType.TRANSITION,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner=owner
        )
        self.entity = entity
        self.status_enum = status_enum
        self.graph = graph

    def pre_check(self, current: Any = None, new: Any = None, **kwargs) -> bool:
        current = coerce_enum(self.status_enum, current, "INVALID_STATUS")
        new = coerce_enum(self.status_enum, new, "INVALID_STATUS")
        return new in self.graph.get(current, frozenset())

    def describe(self, current: Any = None, new: Any = None, **kwargs) -> str:
        current = getattr(current, "value", current)
        new = getattr(new, "value", new)
        return f"Invalid {self.entity} transition: {current} -> {new}"

# ============================================
# USER INVARIANTS
# ============================================

class PhoneFormatValid(Invariant):
    error_class = ValidationError
    code = "INVALID_PHONE"

    def __init__(self):
        super().__init__(
            id="usr_001_phone_format",
            statement="Phone must be +265 followed by 8 or 9 and 8 more digits",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="user_service"
        )

    def pre_check(self, phone: str = None, **kwargs) -> bool:
        return isinstance(phone, str) and is_valid_phone(phone)


class PhoneUnique(Invariant):
    """No two live users share a (normalised) phone number."""

    code = "PHONE_TAKEN"

    def __init__(self):
        super().__init__(
            id="usr_002_phone_unique",
            statement="Phone number already registered",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            dependencies=["usr_001_phone_format"],
            owner="user_service"
        )

    def pre_check(self, phone: str = None, user_id: Optional[str] = None,
                  repository: MatolaRepository = None, **kwargs) -> bool:
        return not repository.phone_taken(phone, exclude_user_id=user_id)


class RoleValid(Invariant):
    error_class = ValidationError
    code = "INVALID_ROLE"

    def __init__(self):
        super().__init__(
            id="usr_003_role_valid",
            statement="Role must be one of: " + ", ".join(r.value for r in Role),
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="user_service"
        )

    def pre_check(self, role: Any = None, **kwargs) -> bool:
        if isinstance(role, Role):
            return True
        return role in {r.value for r in Role}


class VerificationForwardOnly(Invariant):
    """unverified -> pending -> verified; never backwards."""

    code = "VERIFICATION_REGRESSION"

    def __init__(self):
        super().__init__(
            id="usr_004_verification_forward_only",
            statement="Verification state cannot move backwards",
            type=InvariantType.TRANSITION,
            criticality=Criticality.IMPORTANT,
            dependencies=[],
            owner="user_service"
        )

    def pre_check(self, current: Any = None, new: Any = None, **kwargs) -> bool:
        current = coerce_enum(VerificationState, current, "INVALID_VERIFICATION_STATE")
        new = coerce_enum(VerificationState, new, "INVALID_VERIFICATION_STATE")
        return new.rank >= current.rank

    def describe(self, current: Any = None, new: Any = None, **kwargs) -> str:
        return f"Verification cannot regress from {getattr(current, 'value', current)} to {getattr(new, 'value', new)}"


class SoftDeleteStamped(Invariant):
    code = "INVALID_DELETE"

    def __init__(self):
        super().__init__(
            id="usr_005_soft_delete_stamped",
            statement="Deleted users must carry a deleted_at timestamp",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.IMPORTANT,
            dependencies=[],
            owner="user_service"
        )

    def pre_check(self, user: User = None, **kwargs) -> bool:
        return user is not None and user.deleted_at is not None

# ============================================
# SHIPMENT INVARIANTS
# ============================================

class PositiveWeight(Invariant):
    error_class = ValidationError
    code = "INVALID_WEIGHT"

    def __init__(self):
        super().__init__(
            id="shp_002_positive_weight",
            statement="Weight must be positive",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="shipment_service"
        )

    def pre_check(self, weight_kg: Any = None, **kwargs) -> bool:
        return is_positive_number(weight_kg)


class PositivePrice(Invariant):
    """Price is optional (negotiated later) but never zero or negative."""

    error_class = ValidationError
    code = "INVALID_PRICE"

    def __init__(self):
        super().__init__(
            id="shp_003_positive_price",
            statement="Price must be positive",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="shipment_service"
        )

    def pre_check(self, price_mwk: Any = None, **kwargs) -> bool:
        return price_mwk is None or is_positive_number(price_mwk)


class PickupNotInPast(Invariant):
    error_class = ValidationError
    code = "INVALID_PICKUP_DATE"

    def __init__(self):
        super().__init__(
            id="shp_004_pickup_not_in_past",
            statement="Pickup date cannot be in the past",
            type=InvariantType.TEMPORAL,
            criticality=Criticality.IMPORTANT,
            dependencies=[],
            owner="shipment_service"
        )

    def pre_check(self, pickup_date: Optional[date] = None, today: Optional[date] = None, **kwargs) -> bool:
        if pickup_date is None:
            return True
        return pickup_date >= (today or date.today())


class DeliveryAfterPickup(Invariant):
    error_class = ValidationError
    code = "INVALID_DELIVERY_DATE"

    def __init__(self):
        super().__init__(
            id="shp_005_delivery_after_pickup",
            statement="Delivery date must be on or after pickup date",
            type=InvariantType.TEMPORAL,
            criticality=Criticality.IMPORTANT,
            dependencies=["shp_004_pickup_not_in_past"],
            owner="shipment_service"
        )

    def pre_check(self, pickup_date: Optional[date] = None, delivery_date: Optional[date] = None, **kwargs) -> bool:
        if pickup_date is None or delivery_date is None:
            return True
        return delivery_date >= pickup_date


class DistinctEndpoints(Invariant):
    error_class = ValidationError
    code = "SAME_ENDPOINTS"

    def __init__(self):
        super().__init__(
            id="shp_006_distinct_endpoints",
            statement="Origin and destination must be different",
            type=InvariantType.STATE,
            criticality=Criticality.IMPORTANT,
            dependencies=[],
            owner="shipment_service"
        )

    def pre_check(self, origin_name: str = None, destination_name: str = None, **kwargs) -> bool:
        origin = (origin_name or "").strip().casefold()
        destination = (destination_name or "").strip().casefold()
        return bool(origin) and bool(destination) and origin != destination

# ============================================
# MATCH INVARIANTS
# ============================================

class ShipmentMatchable(Invariant):
    """Only an existing, pending shipment can receive a match."""

    code = "SHIPMENT_NOT_MATCHABLE"

    def __init__(self):
        super().__init__(
            id="mat_001_shipment_matchable",
            statement="Shipment is not available for matching",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="matching_service"
        )

    def pre_check(self, shipment_id: str = None, repository: MatolaRepository = None, **kwargs) -> bool:
        shipment = repository.get_shipment(shipment_id)
        return shipment is not None and shipment.status == ShipmentStatus.PENDING

    def violation(self, shipment_id: str = None, repository: MatolaRepository = None, **kwargs) -> MatolaError:
        shipment = repository.get_shipment(shipment_id)
        if shipment is None:
            return InvariantViolation(f"Shipment {shipment_id} not found", code="SHIPMENT_NOT_FOUND")
        return InvariantViolation(
            f"Shipment {shipment_id} is {shipment.status.value}, not pending",
            code=self.code
        )


class SingleActiveMatch(Invariant):
    """At most one match per shipment is pending, accepted or in progress."""

    code = "DUPLICATE_ACTIVE_MATCH"

    def __init__(self):
        super().__init__(
            id="mat_002_single_active_match",
            statement="Shipment already has an active match",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.CRITICAL,
            dependencies=["mat_001_shipment_matchable"],
            owner="matching_service"
        )

    def pre_check(self, shipment_id: str = None, exclude_match_id: Optional[str] = None,
                  repository: MatolaRepository = None, **kwargs) -> bool:
        return repository.get_active_match(shipment_id, exclude_match_id=exclude_match_id) is None

    def post_check(self, result: Any, repository: MatolaRepository = None, **kwargs) -> bool:
        if not isinstance(result, Match) or not result.is_active:
            return True
        other = repository.get_active_match(result.shipment_id, exclude_match_id=result.id)
        logger.info(f"POST-CHECK {self.id}: other_active={other.id if other else None}")
        return other is None

    def rollback_action(self, state_before: Dict[str, Any]):
        match = state_before.get('match')
        repository = state_before.get('repository')
        if match is not None and hasattr(repository, 'delete_match'):
            repository.delete_match(match.id)
            logger.warning(f"ROLLBACK {self.id}: Removed match {match.id}")


class TransporterVerified(Invariant):
    code = "TRANSPORTER_NOT_VERIFIED"

    def __init__(self):
        super().__init__(
            id="mat_003_transporter_verified",
            statement="Transporter must be verified",
            type=InvariantType.SECURITY,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="matching_service"
        )

    def pre_check(self, transporter_id: str = None, repository: MatolaRepository = None, **kwargs) -> bool:
        user = repository.get_user(transporter_id)
        return (
            user is not None
            and user.deleted_at is None
            and user.role == Role.TRANSPORTER
            and user.verification == VerificationState.VERIFIED
        )


class MatchScoreInRange(Invariant):
    error_class = ValidationError
    code = "INVALID_MATCH_SCORE"

    def __init__(self):
        super().__init__(
            id="mat_004_score_in_range",
            statement=f"Match score must be between {MATCH_SCORE_MIN} and {MATCH_SCORE_MAX}",
            type=InvariantType.STATE,
            criticality=Criticality.OPTIONAL,
            dependencies=[],
            owner="matching_service"
        )

    def pre_check(self, score: Any = None, **kwargs) -> bool:
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            return False
        return math.isfinite(score) and MATCH_SCORE_MIN <= score <= MATCH_SCORE_MAX


class AgreedPriceNotInflated(Invariant):
    """Agreed price cannot exceed the shipment's asking price by more than the configured factor."""

    error_class = ValidationError
    code = "PRICE_INFLATION"

    def __init__(self):
        super().__init__(
            id="mat_005_price_not_inflated",
            statement="Agreed price exceeds the allowed markup over the shipment price",
            type=InvariantType.FINANCIAL,
            criticality=Criticality.IMPORTANT,
            dependencies=["mat_001_shipment_matchable"],
            owner="matching_service"
        )

    def pre_check(self, shipment_id: str = None, agreed_price_mwk: Any = None, inflation_limit: float = 1.5,
                  repository: MatolaRepository = None, **kwargs) -> bool:
        if agreed_price_mwk is None:
            return True
        if not is_positive_number(agreed_price_mwk):
            return False
        shipment = repository.get_shipment(shipment_id)
        if shipment is None or shipment.price_mwk is None:
            return True
        return agreed_price_mwk <= shipment.price_mwk * inflation_limit

# ============================================
# ENFORCERS
# ============================================

class UserInvariantEnforcer(EntityEnforcer):
    def __init__(self, repository: MatolaRepository):
        self.repository = repository
        self.phone_format = PhoneFormatValid()
        self.phone_unique = PhoneUnique()
        self.role_valid = RoleValid()
        self.verification = VerificationForwardOnly()
        self.soft_delete = SoftDeleteStamped()

    def assert_phone_format(self, phone: str):
        self.require(self.phone_format, phone=phone)

    def assert_unique_phone(self, phone: str, user_id: Optional[str] = None):
        self.require(self.phone_unique, phone=phone, user_id=user_id, repository=self.repository)

    def assert_valid_role(self, role: Any):
        self.require(self.role_valid, role=role)

    def assert_verification_progression(self, current: Any, new: Any):
        self.require(self.verification, current=current, new=new)

    def assert_soft_deleted(self, user: User):
        self.require(self.soft_delete, user=user)

    def _checks(self, user: User) -> List:
        return [
            (self.phone_format, {'phone': user.phone}),
            (self.role_valid, {'role': user.role}),
            (self.phone_unique, {'phone': user.phone, 'user_id': user.id, 'repository': self.repository}),
        ]

    def check_all(self, user: User) -> EnforcementReport:
        return self.evaluate(self._checks(user))

    def assert_on_create(self, user: User):
        self.check_all(user).raise_first()

    def assert_on_update(self, current: User, updated: User):
        checks = self._checks(updated)
        checks.append((self.verification, {'current': current.verification, 'new': updated.verification}))
        self.evaluate(checks).raise_first()


class ShipmentInvariantEnforcer(EntityEnforcer):
    def __init__(self, repository: Optional[MatolaRepository] = None):
        self.repository = repository
        self.coordinates = ShipmentCoordinatesInRegion()
        self.weight = PositiveWeight()
        self.price = PositivePrice()
        self.pickup = PickupNotInPast()
        self.delivery = DeliveryAfterPickup()
        self.endpoints = DistinctEndpoints()
        self.transition = StatusTransitionAllowed(
            "shp_007_status_transition", "shipment", ShipmentStatus, SHIPMENT_TRANSITIONS, "shipment_service"
        )

    def assert_coordinates(self, shipment: Shipment):
        self.require(self.coordinates, shipment=shipment)

    def assert_positive_weight(self, weight_kg: Any):
        self.require(self.weight, weight_kg=weight_kg)

    def assert_positive_price(self, price_mwk: Any):
        self.require(self.price, price_mwk=price_mwk)

    def assert_pickup_not_past(self, pickup_date: Optional[date], today: Optional[date] = None):
        self.require(self.pickup, pickup_date=pickup_date, today=today)

    def assert_delivery_after_pickup(self, pickup_date: Optional[date], delivery_date: Optional[date]):
        self.require(self.delivery, pickup_date=pickup_date, delivery_date=delivery_date)

    def assert_distinct_endpoints(self, origin_name: str, destination_name: str):
        self.require(self.endpoints, origin_name=origin_name, destination_name=destination_name)

    def assert_status_transition(self, current: Any, new: Any):
        self.require(self.transition, current=current, new=new)

    def check_all(self, shipment: Shipment, today: Optional[date] = None) -> EnforcementReport:
        return self.evaluate([
            (self.coordinates, {'shipment': shipment}),
            (self.weight, {'weight_kg': shipment.weight_kg}),
            (self.price, {'price_mwk': shipment.price_mwk}),
            (self.pickup, {'pickup_date': shipment.pickup_date, 'today': today}),
            (self.delivery, {'pickup_date': shipment.pickup_date, 'delivery_date': shipment.delivery_date}),
            (self.endpoints, {'origin_name': shipment.origin_name, 'destination_name': shipment.destination_name}),
        ])

    def assert_on_create(self, shipment: Shipment, today: Optional[date] = None):
        self.check_all(shipment, today=today).raise_first()

    def assert_on_status_change(self, shipment: Shipment, new_status: Any):
        self.assert_status_transition(shipment.status, new_status)


class MatchInvariantEnforcer(EntityEnforcer):
    def __init__(self, repository: MatolaRepository, settings: Optional[MatolaSettings] = None):
        self.repository = repository
        self.settings = settings or get_settings()
        self.matchable = ShipmentMatchable()
        self.single_active = SingleActiveMatch()
        self.transporter = TransporterVerified()
        self.score = MatchScoreInRange()
        self.inflation = AgreedPriceNotInflated()
        self.transition = StatusTransitionAllowed(
            "mat_006_status_transition", "match", MatchStatus, MATCH_TRANSITIONS, "matching_service"
        )

    def assert_shipment_matchable(self, shipment_id: str):
        self.require(self.matchable, shipment_id=shipment_id, repository=self.repository)

    def assert_no_active_match(self, shipment_id: str, exclude_match_id: Optional[str] = None):
        self.require(self.single_active, shipment_id=shipment_id,
                     exclude_match_id=exclude_match_id, repository=self.repository)

    def assert_transporter_verified(self, transporter_id: str):
        self.require(self.transporter, transporter_id=transporter_id, repository=self.repository)

    def assert_score_range(self, score: Any):
        self.require(self.score, score=score)

    def assert_price_inflation(self, shipment_id: str, agreed_price_mwk: Any):
        self.require(self.inflation, shipment_id=shipment_id, agreed_price_mwk=agreed_price_mwk,
                     inflation_limit=self.settings.MATCH_PRICE_INFLATION_LIMIT, repository=self.repository)

    def assert_status_transition(self, current: Any, new: Any):
        self.require(self.transition, current=current, new=new)

    def create_invariants(self) -> List[Invariant]:
        """Invariants guarding match creation, for use with InvariantEnforcer."""
        return [self.matchable, self.single_active, self.transporter, self.score, self.inflation]

    def create_kwargs(self, match: Match) -> Dict[str, Any]:
        return {
            'match': match,
            'shipment_id': match.shipment_id,
            'exclude_match_id': match.id,
            'transporter_id': match.transporter_id,
            'score': match.score,
            'agreed_price_mwk': match.agreed_price_mwk,
            'inflation_limit': self.settings.MATCH_PRICE_INFLATION_LIMIT,
            'repository': self.repository,
        }

    def check_all(self, match: Match) -> EnforcementReport:
        kwargs = self.create_kwargs(match)
        return self.evaluate([(inv, kwargs) for inv in self.create_invariants()])

    def assert_on_create(self, match: Match):
        self.check_all(match).raise_first()

    def assert_on_status_change(self, match: Match, new_status: Any):
        self.assert_status_transition(match.status, new_status)
        new_status = coerce_enum(MatchStatus, new_status, "INVALID_STATUS")
        if new_status in (MatchStatus.ACCEPTED, MatchStatus.IN_PROGRESS):
            self.assert_no_active_match(match.shipment_id, exclude_match_id=match.id)
