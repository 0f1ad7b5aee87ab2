"""
Matola - Domain Records
Version: 1.0.0

Tagged records for the entities the enforcers validate, with exhaustive
status enumerations and the explicit transition graphs between them.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from enum import Enum
import uuid


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"

# ============================================
# USERS
# ============================================

class Role(str, Enum):
    SHIPPER = "shipper"
    TRANSPORTER = "transporter"
    BROKER = "broker"
    ADMIN = "admin"
    SUPPORT = "support"

class VerificationState(str, Enum):
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"

    @property
    def rank(self) -> int:
        return VERIFICATION_ORDER.index(self)

VERIFICATION_ORDER: List[VerificationState] = [
    VerificationState.UNVERIFIED,
    VerificationState.PENDING,
    VerificationState.VERIFIED,
]

@dataclass
class User:
    id: str
    phone: str
    role: Role
    verification: VerificationState = VerificationState.UNVERIFIED
    name: Optional[str] = None
    deleted_at: Optional[datetime] = None

@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""
    user_id: str
    role: Role
    verification: VerificationState = VerificationState.UNVERIFIED

# ============================================
# SHIPMENTS
# ============================================

@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

class ShipmentStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    IN_TRANSIT = "in_transit"
    IN_CHECKPOINT = "in_checkpoint"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

SHIPMENT_TRANSITIONS: Dict[ShipmentStatus, FrozenSet[ShipmentStatus]] = {
    ShipmentStatus.PENDING: frozenset({ShipmentStatus.MATCHED, ShipmentStatus.CANCELLED}),
    ShipmentStatus.MATCHED: frozenset({ShipmentStatus.IN_TRANSIT, ShipmentStatus.CANCELLED}),
    ShipmentStatus.IN_TRANSIT: frozenset({
        ShipmentStatus.IN_CHECKPOINT, ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED
    }),
    ShipmentStatus.IN_CHECKPOINT: frozenset({
        ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED, ShipmentStatus.CANCELLED
    }),
    ShipmentStatus.DELIVERED: frozenset(),
    ShipmentStatus.CANCELLED: frozenset(),
}

class CargoType(str, Enum):
    FOOD = "food"
    BUILDING_MATERIALS = "building_materials"
    AGRICULTURAL = "agricultural"
    GENERAL = "general"
    OTHER = "other"

@dataclass
class Shipment:
    id: str
    shipper_id: str
    cargo_type: CargoType
    weight_kg: float
    origin: Coordinate
    destination: Coordinate
    origin_name: str
    destination_name: str
    price_mwk: Optional[float] = None
    pickup_date: Optional[date] = None
    delivery_date: Optional[date] = None
    status: ShipmentStatus = ShipmentStatus.PENDING

# ============================================
# MATCHES
# ============================================

class MatchStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

ACTIVE_MATCH_STATUSES: FrozenSet[MatchStatus] = frozenset({
    MatchStatus.PENDING, MatchStatus.ACCEPTED, MatchStatus.IN_PROGRESS
})

MATCH_TRANSITIONS: Dict[MatchStatus, FrozenSet[MatchStatus]] = {
    MatchStatus.PENDING: frozenset({MatchStatus.ACCEPTED, MatchStatus.REJECTED, MatchStatus.CANCELLED}),
    MatchStatus.ACCEPTED: frozenset({MatchStatus.IN_PROGRESS, MatchStatus.CANCELLED}),
    MatchStatus.IN_PROGRESS: frozenset({MatchStatus.COMPLETED, MatchStatus.CANCELLED}),
    MatchStatus.COMPLETED: frozenset(),
    MatchStatus.REJECTED: frozenset(),
    MatchStatus.CANCELLED: frozenset(),
}

@dataclass
class Match:
    id: str
    shipment_id: str
    transporter_id: str
    score: float = 0.0
    agreed_price_mwk: Optional[float] = None
    status: MatchStatus = MatchStatus.PENDING

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_MATCH_STATUSES

# ============================================
# PAYMENTS
# ============================================

class PaymentProvider(str, Enum):
    AIRTEL_MONEY = "airtel_money"
    TNM_MPAMBA = "tnm_mpamba"
    CASH = "cash"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUNDED = "refunded"

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.CONFIRMED, PaymentStatus.FAILED}),
    PaymentStatus.CONFIRMED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.REFUNDED: frozenset(),
}

class EscrowStatus(str, Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    RELEASED = "released"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"

SYSTEM_ACTOR = "system"

@dataclass(frozen=True)
class EscrowTransition:
    action: str
    source: EscrowStatus
    target: EscrowStatus
    allowed_roles: FrozenSet[str]

ESCROW_TRANSITIONS: Tuple[EscrowTransition, ...] = (
    EscrowTransition("transporter_accepts", EscrowStatus.PENDING, EscrowStatus.IN_TRANSIT,
                     frozenset({Role.TRANSPORTER.value})),
    EscrowTransition("shipper_cancels", EscrowStatus.PENDING, EscrowStatus.CANCELLED,
                     frozenset({Role.SHIPPER.value, Role.ADMIN.value})),
    EscrowTransition("shipper_confirms_delivery", EscrowStatus.IN_TRANSIT, EscrowStatus.COMPLETED,
                     frozenset({Role.SHIPPER.value})),
    EscrowTransition("raise_dispute", EscrowStatus.IN_TRANSIT, EscrowStatus.DISPUTED,
                     frozenset({Role.SHIPPER.value, Role.TRANSPORTER.value})),
    EscrowTransition("release_funds", EscrowStatus.COMPLETED, EscrowStatus.RELEASED,
                     frozenset({SYSTEM_ACTOR, Role.ADMIN.value})),
    EscrowTransition("resolve_for_transporter", EscrowStatus.DISPUTED, EscrowStatus.RELEASED,
                     frozenset({Role.ADMIN.value})),
    EscrowTransition("resolve_for_shipper", EscrowStatus.DISPUTED, EscrowStatus.REFUNDED,
                     frozenset({Role.ADMIN.value})),
    EscrowTransition("process_refund", EscrowStatus.CANCELLED, EscrowStatus.REFUNDED,
                     frozenset({SYSTEM_ACTOR, Role.ADMIN.value})),
)

def find_escrow_transition(source: EscrowStatus, action: str) -> Optional[EscrowTransition]:
    for transition in ESCROW_TRANSITIONS:
        if transition.source == source and transition.action == action:
            return transition
    return None

@dataclass
class Payment:
    id: str
    shipment_id: str
    payer_id: str
    provider: PaymentProvider
    amount_mwk: float
    platform_fee_mwk: float = 0.0
    net_amount_mwk: Optional[float] = None
    idempotency_key: Optional[str] = None
    reference: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    escrow_status: EscrowStatus = EscrowStatus.PENDING
    provider_reference: Optional[str] = None

    def __post_init__(self):
        if self.net_amount_mwk is None:
            self.net_amount_mwk = self.amount_mwk - self.platform_fee_mwk

# ============================================
# RATINGS
# ============================================

RATING_MIN = 1
RATING_MAX = 5

@dataclass
class Rating:
    id: str
    match_id: str
    rater_id: str
    ratee_id: str
    score: Any
    comment: Optional[str] = None

# ============================================
# USSD
# ============================================

@dataclass
class UssdSession:
    session_id: str
    phone: str
    state: str = "WELCOME"
    language: str = "en"
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
