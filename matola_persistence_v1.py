"""
Matola - Persistence Collaborator
Version: 1.0.0

Read-only queries the enforcers depend on, plus an in-memory store
(production would use the database) that also owns the authoritative
uniqueness constraints closing the races the enforcers can only pre-check.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set, Tuple

from matola_enforcement_v1 import InvariantViolation
from matola_models_v1 import (
    Match,
    MatchStatus,
    Payment,
    Rating,
    Shipment,
    User,
)
from matola_phone_v1 import normalize_phone

logger = logging.getLogger("matola.storage")

# ============================================
# READ-ONLY PROTOCOL
# ============================================

class MatolaRepository(ABC):
    """Read-only lookups consumed by the invariant enforcers."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    def phone_taken(self, phone: str, exclude_user_id: Optional[str] = None) -> bool:
        """True if another (non-deleted) user already owns this phone."""

    @abstractmethod
    def get_shipment(self, shipment_id: str) -> Optional[Shipment]:
        pass

    @abstractmethod
    def get_match(self, match_id: str) -> Optional[Match]:
        pass

    @abstractmethod
    def get_active_match(self, shipment_id: str, exclude_match_id: Optional[str] = None) -> Optional[Match]:
        pass

    @abstractmethod
    def get_priced_match(self, shipment_id: str) -> Optional[Match]:
        """The active match, else the most recently stored completed one."""

    @abstractmethod
    def rating_exists(self, match_id: str, rater_id: str) -> bool:
        pass

    @abstractmethod
    def get_payment(self, payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    def idempotency_key_used(self, key: str) -> bool:
        pass

    @abstractmethod
    def webhook_processed(self, key: str) -> bool:
        pass

# ============================================
# IN-MEMORY STORE
# ============================================

class InMemoryRepository(MatolaRepository):
    """In-memory store (production would use database)."""

    def __init__(self):
        self.users: Dict[str, User] = {}
        self.shipments: Dict[str, Shipment] = {}
        self.matches: Dict[str, Match] = {}
        self.ratings: Dict[str, Rating] = {}
        self.payments: Dict[str, Payment] = {}
        self.phones: Dict[str, str] = {}  # normalised phone -> user_id
        self.rating_keys: Set[Tuple[str, str]] = set()
        self.idempotency_keys: Dict[str, str] = {}  # key -> payment_id
        self.processed_webhooks: Set[str] = set()
        self._lock = threading.Lock()

    # --- reads ---

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        try:
            user_id = self.phones.get(normalize_phone(phone))
        except ValueError:
            return None
        return self.users.get(user_id) if user_id else None

    def phone_taken(self, phone: str, exclude_user_id: Optional[str] = None) -> bool:
        try:
            key = normalize_phone(phone)
        except ValueError:
            return False
        owner = self.phones.get(key)
        return owner is not None and owner != exclude_user_id

    def get_shipment(self, shipment_id: str) -> Optional[Shipment]:
        return self.shipments.get(shipment_id)

    def get_match(self, match_id: str) -> Optional[Match]:
        return self.matches.get(match_id)

    def get_active_match(self, shipment_id: str, exclude_match_id: Optional[str] = None) -> Optional[Match]:
        for match in self.matches.values():
            if match.shipment_id == shipment_id and match.is_active and match.id != exclude_match_id:
                return match
        return None

    def get_priced_match(self, shipment_id: str) -> Optional[Match]:
        active = self.get_active_match(shipment_id)
        if active is not None:
            return active
        for match in reversed(list(self.matches.values())):
            if match.shipment_id == shipment_id and match.status == MatchStatus.COMPLETED:
                return match
        return None

    def rating_exists(self, match_id: str, rater_id: str) -> bool:
        return (match_id, rater_id) in self.rating_keys

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.payments.get(payment_id)

    def get_payment_by_reference(self, reference: str) -> Optional[Payment]:
        for payment in self.payments.values():
            if payment.reference == reference:
                return payment
        return None

    def idempotency_key_used(self, key: str) -> bool:
        return key in self.idempotency_keys

    def webhook_processed(self, key: str) -> bool:
        return key in self.processed_webhooks

    # --- writes (outside the validation layer) ---

    def save_user(self, user: User) -> User:
        key = normalize_phone(user.phone)
        with self._lock:
            owner = self.phones.get(key)
            if owner is not None and owner != user.id:
                raise InvariantViolation("Phone number already registered", code="PHONE_TAKEN")
            previous = self.users.get(user.id)
            if previous is not None:
                old_key = normalize_phone(previous.phone)
                if self.phones.get(old_key) == user.id:
                    del self.phones[old_key]
            self.users[user.id] = user
            if user.deleted_at is None:
                self.phones[key] = user.id
        logger.info(f"[STORAGE] Saved user {user.id}")
        return user

    def save_shipment(self, shipment: Shipment) -> Shipment:
        with self._lock:
            self.shipments[shipment.id] = shipment
        logger.info(f"[STORAGE] Saved shipment {shipment.id}")
        return shipment

    def save_match(self, match: Match) -> Match:
        """Store a match. At most one active match per shipment, checked under the lock."""
        with self._lock:
            if match.is_active:
                existing = self.get_active_match(match.shipment_id, exclude_match_id=match.id)
                if existing is not None:
                    raise InvariantViolation(
                        "Shipment already has an active match",
                        code="DUPLICATE_ACTIVE_MATCH"
                    )
            self.matches[match.id] = match
        logger.info(f"[STORAGE] Saved match {match.id} ({match.status.value})")
        return match

    def delete_match(self, match_id: str):
        """Delete match (rollback operation)."""
        with self._lock:
            if self.matches.pop(match_id, None) is not None:
                logger.warning(f"[STORAGE] Deleted match {match_id}")

    def save_rating(self, rating: Rating) -> Rating:
        key = (rating.match_id, rating.rater_id)
        with self._lock:
            if key in self.rating_keys:
                raise InvariantViolation("Match already rated by this user", code="DUPLICATE_RATING")
            self.ratings[rating.id] = rating
            self.rating_keys.add(key)
        logger.info(f"[STORAGE] Saved rating {rating.id}")
        return rating

    def save_payment(self, payment: Payment) -> Payment:
        with self._lock:
            if payment.idempotency_key:
                owner = self.idempotency_keys.get(payment.idempotency_key)
                if owner is not None and owner != payment.id:
                    raise InvariantViolation("Duplicate payment request", code="DUPLICATE_PAYMENT")
                self.idempotency_keys[payment.idempotency_key] = payment.id
            self.payments[payment.id] = payment
        logger.info(f"[STORAGE] Saved payment {payment.id} ({payment.status.value})")
        return payment

    def mark_webhook_processed(self, key: str) -> bool:
        """Record a callback key; False if it was already recorded."""
        with self._lock:
            if key in self.processed_webhooks:
                return False
            self.processed_webhooks.add(key)
            return True
