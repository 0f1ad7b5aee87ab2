"""
Matola - Test Suite
Version: 1.0.0

Coverage for the enforcement layer:
- Unit tests (validators and invariants in isolation)
- Enforcer tests (one entity at a time, in-memory repository)
- Composition tests (InvariantEnforcer, ledger, rollback)
- USSD grammar and state machine
"""

import importlib

import pytest
from dataclasses import replace
from datetime import date, datetime, timedelta
from itertools import product

from matola_config import MatolaSettings
from matola_enforcement_integration import (
    Invariant,
    InvariantType,
    Criticality,
    InvariantEnforcer,
    DecisionLedger,
    EnforcementResult,
    MatolaError,
    ValidationError,
    OutOfRegion,
    InvariantViolation,
    Unauthorized,
    Forbidden,
    SignatureMismatch,
    SystemCompromised,
    InMemoryRepository,
    StaticSecretStore,
    WebhookVerifier,
    TokenRegistry,
    RequestContext,
    UserInvariantEnforcer,
    ShipmentInvariantEnforcer,
    MatchInvariantEnforcer,
    PaymentInvariantEnforcer,
    RatingInvariantEnforcer,
    UssdInvariantEnforcer,
    UssdMenu,
    UssdSessionStore,
    UssdState,
    is_region_coordinate,
    validate_shipment_coordinates,
    calculate_distance,
    generate_signature,
    verify_provider_webhook,
    webhook_idempotency_key,
    map_provider_status,
    parse_ussd_text,
    require_authenticated,
    require_role,
    require_resource_owner,
    require_payment_access,
    require_verified,
    sanitize_for_logging,
)
from matola_geo_v1 import lookup_location
from matola_invariants_v1 import SingleActiveMatch
from matola_models_v1 import (
    MATCH_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    SHIPMENT_TRANSITIONS,
    CargoType,
    Coordinate,
    EscrowStatus,
    Match,
    MatchStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
    Principal,
    Rating,
    Role,
    Shipment,
    ShipmentStatus,
    User,
    UssdSession,
    VerificationState,
)
from matola_phone_v1 import detect_mobile_money_provider, is_valid_phone, normalize_phone
from matola_ussd_v1 import MAX_SCREEN_LENGTH, render_menu
from matola_webhook_v1 import parse_provider_callback

LILONGWE = Coordinate(-13.9626, 33.7741)
BLANTYRE = Coordinate(-15.7861, 35.0058)
NAIROBI = Coordinate(-1.2921, 36.8219)

SETTINGS = MatolaSettings(
    AIRTEL_WEBHOOK_SECRET="airtel-test-secret",
    TNM_WEBHOOK_SECRET="tnm-test-secret",
    USSD_SESSION_TTL_SECONDS=300,
)

# ============================================
# FIXTURES / BUILDERS
# ============================================

def make_shipment(id="SHP-1", shipper_id="USR-SHIPPER", price_mwk=185000.0, **overrides) -> Shipment:
    fields = dict(
        id=id,
        shipper_id=shipper_id,
        cargo_type=CargoType.AGRICULTURAL,
        weight_kg=5000.0,
        origin=LILONGWE,
        destination=BLANTYRE,
        origin_name="Lilongwe",
        destination_name="Blantyre",
        price_mwk=price_mwk,
    )
    fields.update(overrides)
    return Shipment(**fields)


@pytest.fixture
def repository():
    """Shipper, verified transporter and one pending shipment."""
    repo = InMemoryRepository()
    repo.save_user(User(id="USR-SHIPPER", phone="+265991000001", role=Role.SHIPPER))
    repo.save_user(User(id="USR-TRANS", phone="+265881000002", role=Role.TRANSPORTER,
                        verification=VerificationState.VERIFIED))
    repo.save_user(User(id="USR-OTHER", phone="+265991000003", role=Role.TRANSPORTER))
    repo.save_shipment(make_shipment())
    return repo


@pytest.fixture
def completed_match(repository):
    match = Match(id="MAT-1", shipment_id="SHP-1", transporter_id="USR-TRANS",
                  agreed_price_mwk=180000.0, status=MatchStatus.COMPLETED)
    repository.save_match(match)
    return match

# ============================================
# GEO VALIDATOR
# ============================================

class TestGeoValidator:
    """Region geofence and distance."""

    def test_lilongwe_inside_region(self):
        assert is_region_coordinate(-13.9626, 33.7741)

    @pytest.mark.parametrize("lat,lng", [
        (-9.2, 28.2), (-17.8, 35.9), (-9.2, 35.9), (-17.8, 28.2)
    ])
    def test_box_edges_inclusive(self, lat, lng):
        assert is_region_coordinate(lat, lng)

    @pytest.mark.parametrize("lat,lng", [
        (-1.2921, 36.8219),        # Nairobi
        (-9.19, 33.0),
        (-17.81, 33.0),
        (-13.0, 35.91),
        (float("nan"), 33.0),
        (-13.0, float("inf")),
        ("north", 33.0),
    ])
    def test_outside_region(self, lat, lng):
        assert not is_region_coordinate(lat, lng)

    def test_destination_outside_raises_out_of_region(self):
        with pytest.raises(OutOfRegion) as exc:
            validate_shipment_coordinates(LILONGWE.lat, LILONGWE.lng, NAIROBI.lat, NAIROBI.lng)

        assert exc.value.code == "OUT_OF_REGION"
        assert exc.value.http_status == 400
        assert "Destination" in exc.value.message

    def test_origin_outside_named_in_message(self):
        with pytest.raises(OutOfRegion) as exc:
            validate_shipment_coordinates(NAIROBI.lat, NAIROBI.lng, BLANTYRE.lat, BLANTYRE.lng)
        assert "Origin" in exc.value.message

    def test_both_inside_returns_true(self):
        assert validate_shipment_coordinates(LILONGWE.lat, LILONGWE.lng, BLANTYRE.lat, BLANTYRE.lng) is True

    def test_distance_lilongwe_blantyre(self):
        distance = calculate_distance(LILONGWE.lat, LILONGWE.lng, BLANTYRE.lat, BLANTYRE.lng)
        assert 230 < distance < 255

    def test_distance_symmetric_and_zero(self):
        there = calculate_distance(LILONGWE.lat, LILONGWE.lng, BLANTYRE.lat, BLANTYRE.lng)
        back = calculate_distance(BLANTYRE.lat, BLANTYRE.lng, LILONGWE.lat, LILONGWE.lng)
        assert there == pytest.approx(back)
        assert calculate_distance(LILONGWE.lat, LILONGWE.lng, LILONGWE.lat, LILONGWE.lng) == 0

    def test_known_towns_are_inside_region(self):
        assert lookup_location("  LILONGWE ") == (LILONGWE.lat, LILONGWE.lng)
        assert lookup_location("Nairobi") is None
        for town in ("mzuzu", "zomba", "karonga", "mulanje"):
            assert is_region_coordinate(*lookup_location(town))

# ============================================
# WEBHOOK SIGNATURES
# ============================================

class TestWebhookSignatures:
    """HMAC verification fails closed."""

    PAYLOAD = '{"transaction":{"id":"TX-1","status_code":"TS"},"reference":"REF-1"}'

    def test_matching_secret_verifies(self):
        signature = generate_signature(self.PAYLOAD, "secretA")
        assert verify_provider_webhook(self.PAYLOAD, signature, "secretA")

    def test_other_secret_rejected(self):
        signature = generate_signature(self.PAYLOAD, "secretA")
        assert not verify_provider_webhook(self.PAYLOAD, signature, "secretB")

    def test_tampered_payload_rejected(self):
        signature = generate_signature(self.PAYLOAD, "secretA")
        assert not verify_provider_webhook(self.PAYLOAD.replace("TS", "TF"), signature, "secretA")

    @pytest.mark.parametrize("secret", [None, ""])
    def test_missing_secret_rejected(self, secret):
        signature = generate_signature(self.PAYLOAD, "secretA")
        assert verify_provider_webhook(self.PAYLOAD, signature, secret) is False

    @pytest.mark.parametrize("signature", [None, "", "not-hex", "éé"])
    def test_bad_signature_never_raises(self, signature):
        assert verify_provider_webhook(self.PAYLOAD, signature, "secretA") is False

    def test_bytes_and_str_payloads_agree(self):
        assert generate_signature(self.PAYLOAD, "s") == generate_signature(self.PAYLOAD.encode(), "s")

    def test_verifier_uses_provider_secret(self):
        verifier = WebhookVerifier(StaticSecretStore({"AIRTEL_WEBHOOK_SECRET": "secretA"}))
        signature = generate_signature(self.PAYLOAD, "secretA")

        assert verifier.verify("airtel", self.PAYLOAD, signature)
        # TNM secret not configured
        assert not verifier.verify("tnm", self.PAYLOAD, signature)
        assert not verifier.verify("mpesa", self.PAYLOAD, signature)

    def test_require_verified_raises_signature_mismatch(self):
        verifier = WebhookVerifier(StaticSecretStore({"AIRTEL_WEBHOOK_SECRET": "secretA"}))
        with pytest.raises(SignatureMismatch) as exc:
            verifier.require_verified("airtel", self.PAYLOAD, "0" * 64)
        assert exc.value.http_status == 401
        assert exc.value.code == "INVALID_SIGNATURE"

    def test_idempotency_key(self):
        assert webhook_idempotency_key("airtel", "TX-1", "TS") == "airtel:TX-1:TS"
        assert webhook_idempotency_key(PaymentProvider.TNM_MPAMBA, "T9", "0") == "tnm:T9:0"

    @pytest.mark.parametrize("provider,code,expected", [
        ("airtel", "TS", PaymentStatus.CONFIRMED),
        ("airtel", "ts", PaymentStatus.CONFIRMED),
        ("airtel", "TF", PaymentStatus.FAILED),
        ("airtel", "TIP", PaymentStatus.PENDING),
        ("tnm", "0", PaymentStatus.CONFIRMED),
        ("tnm", 0, PaymentStatus.CONFIRMED),
        ("tnm", "17", PaymentStatus.FAILED),
    ])
    def test_map_provider_status(self, provider, code, expected):
        assert map_provider_status(provider, code) == expected

    def test_parse_callbacks(self):
        airtel = parse_provider_callback("airtel", {
            "transaction": {"id": "TX-1", "status_code": "TS"}, "reference": "REF-1"
        })
        tnm = parse_provider_callback("tnm", {"transactionId": "T9", "resultCode": 0, "reference": "REF-2"})

        assert (airtel.transaction_id, airtel.status_code, airtel.reference) == ("TX-1", "TS", "REF-1")
        assert (tnm.transaction_id, tnm.status_code, tnm.reference) == ("T9", "0", "REF-2")

    @pytest.mark.parametrize("body", [[], {"reference": "REF-1"}, {"transaction": "TX", "reference": "R"}])
    def test_parse_rejects_malformed(self, body):
        with pytest.raises(ValidationError) as exc:
            parse_provider_callback("airtel", body)
        assert exc.value.code == "INVALID_WEBHOOK_PAYLOAD"

# ============================================
# PHONE NUMBERS
# ============================================

class TestPhoneNumbers:

    @pytest.mark.parametrize("phone", ["+265991234567", "+265 991 234 567", "+265-881-234-567"])
    def test_valid(self, phone):
        assert is_valid_phone(phone)

    @pytest.mark.parametrize("phone", ["+265771234567", "0991234567", "+26599123456", "+254712345678", ""])
    def test_invalid(self, phone):
        assert not is_valid_phone(phone)

    @pytest.mark.parametrize("phone", ["0991234567", "265991234567", "00265991234567", "+265 991-234-567"])
    def test_normalize(self, phone):
        assert normalize_phone(phone) == "+265991234567"

    def test_normalize_rejects_foreign(self):
        with pytest.raises(ValueError):
            normalize_phone("+254712345678")

    def test_provider_by_prefix(self):
        assert detect_mobile_money_provider("+265991234567") == PaymentProvider.AIRTEL_MONEY
        assert detect_mobile_money_provider("+265881234567") == PaymentProvider.TNM_MPAMBA
        assert detect_mobile_money_provider("+265886234567") == PaymentProvider.AIRTEL_MONEY

# ============================================
# USER ENFORCER
# ============================================

class TestUserInvariantEnforcer:

    def test_valid_user_passes(self, repository):
        enforcer = UserInvariantEnforcer(repository)
        enforcer.assert_on_create(User(id="USR-NEW", phone="+265 999 111 222", role=Role.BROKER))

    def test_invalid_phone(self, repository):
        with pytest.raises(ValidationError) as exc:
            UserInvariantEnforcer(repository).assert_phone_format("0991234567")
        assert exc.value.code == "INVALID_PHONE"

    def test_phone_taken_in_any_format(self, repository):
        enforcer = UserInvariantEnforcer(repository)
        with pytest.raises(InvariantViolation) as exc:
            enforcer.assert_unique_phone("+265 991 000 001")
        assert exc.value.code == "PHONE_TAKEN"
        assert exc.value.http_status == 409

    def test_own_phone_not_taken(self, repository):
        UserInvariantEnforcer(repository).assert_unique_phone("+265991000001", user_id="USR-SHIPPER")

    @pytest.mark.parametrize("role", ["shipper", Role.ADMIN, "support"])
    def test_valid_roles(self, repository, role):
        UserInvariantEnforcer(repository).assert_valid_role(role)

    @pytest.mark.parametrize("role", ["driver", "", None, "ADMIN"])
    def test_invalid_roles(self, repository, role):
        with pytest.raises(ValidationError) as exc:
            UserInvariantEnforcer(repository).assert_valid_role(role)
        assert exc.value.code == "INVALID_ROLE"

    @pytest.mark.parametrize("current,new", [
        ("unverified", "pending"), ("pending", "verified"), ("unverified", "verified"), ("verified", "verified")
    ])
    def test_verification_forward(self, repository, current, new):
        UserInvariantEnforcer(repository).assert_verification_progression(current, new)

    @pytest.mark.parametrize("current,new", [("verified", "pending"), ("pending", "unverified")])
    def test_verification_never_regresses(self, repository, current, new):
        with pytest.raises(InvariantViolation) as exc:
            UserInvariantEnforcer(repository).assert_verification_progression(current, new)
        assert exc.value.code == "VERIFICATION_REGRESSION"

    def test_reclaimed_number_stays_with_new_owner(self, repository):
        shipper = repository.get_user("USR-SHIPPER")
        repository.save_user(replace(shipper, deleted_at=datetime.now()))
        repository.save_user(User(id="USR-NEXT", phone="+265991000001", role=Role.SHIPPER))

        repository.save_user(replace(shipper, phone="+265991000009", deleted_at=None))

        assert repository.phone_taken("+265991000001")
        assert repository.get_user_by_phone("0991000001").id == "USR-NEXT"
        with pytest.raises(InvariantViolation) as exc:
            UserInvariantEnforcer(repository).assert_unique_phone("+265991000001", user_id="USR-THIRD")
        assert exc.value.code == "PHONE_TAKEN"

    def test_update_checks_verification(self, repository):
        current = repository.get_user("USR-TRANS")
        updated = replace(current, verification=VerificationState.PENDING)
        with pytest.raises(InvariantViolation):
            UserInvariantEnforcer(repository).assert_on_update(current, updated)

    def test_soft_delete_needs_timestamp(self, repository):
        enforcer = UserInvariantEnforcer(repository)
        user = repository.get_user("USR-SHIPPER")
        with pytest.raises(InvariantViolation):
            enforcer.assert_soft_deleted(user)
        enforcer.assert_soft_deleted(replace(user, deleted_at=datetime.now()))

    def test_check_all_collects_every_violation(self, repository):
        report = UserInvariantEnforcer(repository).check_all(User(id="X", phone="123", role="driver"))
        assert not report.valid
        assert [v.code for v in report.violations] == ["INVALID_PHONE", "INVALID_ROLE"]

# ============================================
# SHIPMENT ENFORCER
# ============================================

class TestShipmentInvariantEnforcer:

    def test_valid_shipment_passes(self):
        ShipmentInvariantEnforcer().assert_on_create(make_shipment())

    def test_destination_outside_region(self):
        with pytest.raises(OutOfRegion):
            ShipmentInvariantEnforcer().assert_on_create(make_shipment(destination=NAIROBI))

    @pytest.mark.parametrize("weight", [0, -5, float("nan"), None, True, "5000"])
    def test_weight_must_be_positive(self, weight):
        with pytest.raises(ValidationError) as exc:
            ShipmentInvariantEnforcer().assert_positive_weight(weight)
        assert exc.value.code == "INVALID_WEIGHT"

    def test_price_optional_but_positive(self):
        enforcer = ShipmentInvariantEnforcer()
        enforcer.assert_positive_price(None)
        enforcer.assert_positive_price(1)
        for price in (0, -100):
            with pytest.raises(ValidationError):
                enforcer.assert_positive_price(price)

    def test_pickup_dates(self):
        enforcer = ShipmentInvariantEnforcer()
        today = date(2026, 3, 1)
        enforcer.assert_pickup_not_past(today, today=today)
        with pytest.raises(ValidationError) as exc:
            enforcer.assert_pickup_not_past(today - timedelta(days=1), today=today)
        assert exc.value.code == "INVALID_PICKUP_DATE"

    def test_delivery_not_before_pickup(self):
        enforcer = ShipmentInvariantEnforcer()
        enforcer.assert_delivery_after_pickup(date(2026, 3, 1), date(2026, 3, 1))
        with pytest.raises(ValidationError) as exc:
            enforcer.assert_delivery_after_pickup(date(2026, 3, 2), date(2026, 3, 1))
        assert exc.value.code == "INVALID_DELIVERY_DATE"

    def test_endpoints_distinct_case_insensitive(self):
        with pytest.raises(ValidationError) as exc:
            ShipmentInvariantEnforcer().assert_distinct_endpoints("Lilongwe", " lilongwe")
        assert exc.value.code == "SAME_ENDPOINTS"

    @pytest.mark.parametrize("current,new", [
        (a, b) for a, targets in SHIPMENT_TRANSITIONS.items() for b in targets
    ])
    def test_allowed_transitions(self, current, new):
        ShipmentInvariantEnforcer().assert_status_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        (a, b) for a, b in product(ShipmentStatus, ShipmentStatus) if b not in SHIPMENT_TRANSITIONS[a]
    ])
    def test_unlisted_transitions_rejected(self, current, new):
        with pytest.raises(InvariantViolation) as exc:
            ShipmentInvariantEnforcer().assert_status_transition(current, new)
        assert exc.value.code == "INVALID_TRANSITION"

    def test_unknown_status_is_validation_error(self):
        with pytest.raises(ValidationError):
            ShipmentInvariantEnforcer().assert_status_transition("pending", "lost")

    def test_transition_message(self):
        with pytest.raises(InvariantViolation) as exc:
            ShipmentInvariantEnforcer().assert_on_status_change(
                make_shipment(status=ShipmentStatus.DELIVERED), ShipmentStatus.PENDING
            )
        assert exc.value.message == "Invalid shipment transition: delivered -> pending"

# ============================================
# MATCH ENFORCER
# ============================================

class TestMatchInvariantEnforcer:

    def _match(self, **overrides) -> Match:
        fields = dict(id="MAT-1", shipment_id="SHP-1", transporter_id="USR-TRANS",
                      score=80.0, agreed_price_mwk=180000.0)
        fields.update(overrides)
        return Match(**fields)

    def test_valid_match_passes(self, repository):
        MatchInvariantEnforcer(repository, SETTINGS).assert_on_create(self._match())

    def test_missing_shipment(self, repository):
        with pytest.raises(InvariantViolation) as exc:
            MatchInvariantEnforcer(repository, SETTINGS).assert_shipment_matchable("SHP-NOPE")
        assert exc.value.code == "SHIPMENT_NOT_FOUND"

    def test_shipment_not_pending(self, repository):
        repository.save_shipment(make_shipment(status=ShipmentStatus.MATCHED))
        with pytest.raises(InvariantViolation) as exc:
            MatchInvariantEnforcer(repository, SETTINGS).assert_shipment_matchable("SHP-1")
        assert exc.value.code == "SHIPMENT_NOT_MATCHABLE"

    def test_second_active_match_rejected(self, repository):
        repository.save_match(self._match())
        with pytest.raises(InvariantViolation) as exc:
            MatchInvariantEnforcer(repository, SETTINGS).assert_on_create(self._match(id="MAT-2"))
        assert exc.value.code == "DUPLICATE_ACTIVE_MATCH"

    def test_inactive_match_does_not_block(self, repository):
        repository.save_match(self._match(status=MatchStatus.REJECTED))
        MatchInvariantEnforcer(repository, SETTINGS).assert_no_active_match("SHP-1")

    @pytest.mark.parametrize("transporter_id", ["USR-OTHER", "USR-SHIPPER", "USR-NOPE"])
    def test_transporter_must_be_verified_transporter(self, repository, transporter_id):
        with pytest.raises(InvariantViolation) as exc:
            MatchInvariantEnforcer(repository, SETTINGS).assert_transporter_verified(transporter_id)
        assert exc.value.code == "TRANSPORTER_NOT_VERIFIED"

    @pytest.mark.parametrize("score", [-0.1, 100.5, float("nan"), True])
    def test_score_range(self, repository, score):
        with pytest.raises(ValidationError):
            MatchInvariantEnforcer(repository, SETTINGS).assert_score_range(score)

    def test_price_inflation_limit(self, repository):
        enforcer = MatchInvariantEnforcer(repository, SETTINGS)
        enforcer.assert_price_inflation("SHP-1", 277500)  # exactly 150%
        with pytest.raises(ValidationError) as exc:
            enforcer.assert_price_inflation("SHP-1", 277501)
        assert exc.value.code == "PRICE_INFLATION"

    def test_accepting_rechecks_active_match(self, repository):
        repository.save_match(self._match(id="MAT-A", status=MatchStatus.ACCEPTED))
        repository.matches["MAT-B"] = self._match(id="MAT-B")
        with pytest.raises(InvariantViolation) as exc:
            MatchInvariantEnforcer(repository, SETTINGS).assert_on_status_change(
                repository.get_match("MAT-B"), MatchStatus.ACCEPTED
            )
        assert exc.value.code == "DUPLICATE_ACTIVE_MATCH"

    @pytest.mark.parametrize("current,new", [
        (a, b) for a, b in product(MatchStatus, MatchStatus) if b not in MATCH_TRANSITIONS[a]
    ])
    def test_unlisted_transitions_rejected(self, repository, current, new):
        with pytest.raises(InvariantViolation):
            MatchInvariantEnforcer(repository, SETTINGS).assert_status_transition(current, new)

    def test_store_closes_race(self, repository):
        """Two writers that both passed the pre-check: the store keeps one."""
        repository.save_match(self._match(id="MAT-1"))
        with pytest.raises(InvariantViolation) as exc:
            repository.save_match(self._match(id="MAT-2"))
        assert exc.value.code == "DUPLICATE_ACTIVE_MATCH"
        assert list(repository.matches) == ["MAT-1"]

# ============================================
# PAYMENT ENFORCER
# ============================================

class TestPaymentInvariantEnforcer:

    def _payment(self, **overrides) -> Payment:
        fields = dict(id="PAY-1", shipment_id="SHP-1", payer_id="USR-SHIPPER",
                      provider=PaymentProvider.AIRTEL_MONEY, amount_mwk=185000.0,
                      platform_fee_mwk=18500.0, idempotency_key="key-1", reference="REF-1")
        fields.update(overrides)
        return Payment(**fields)

    def test_valid_payment_passes(self, repository):
        payment = self._payment()
        assert payment.net_amount_mwk == 166500.0
        PaymentInvariantEnforcer(repository, SETTINGS).assert_on_create(payment)

    @pytest.mark.parametrize("amount", [0, -1, None, float("inf")])
    def test_amount_positive(self, repository, amount):
        with pytest.raises(ValidationError) as exc:
            PaymentInvariantEnforcer(repository, SETTINGS).assert_positive_amount(amount)
        assert exc.value.code == "INVALID_AMOUNT"

    def test_amount_within_tolerance(self, repository):
        enforcer = PaymentInvariantEnforcer(repository, SETTINGS)
        enforcer.assert_amount_matches_shipment(self._payment(amount_mwk=185000.9, platform_fee_mwk=0))
        with pytest.raises(InvariantViolation) as exc:
            enforcer.assert_amount_matches_shipment(self._payment(amount_mwk=185002, platform_fee_mwk=0))
        assert exc.value.code == "AMOUNT_MISMATCH"

    def test_agreed_price_wins_over_shipment_price(self, repository):
        repository.save_match(Match(id="MAT-1", shipment_id="SHP-1", transporter_id="USR-TRANS",
                                    agreed_price_mwk=180000.0))
        enforcer = PaymentInvariantEnforcer(repository, SETTINGS)
        enforcer.assert_amount_matches_shipment(self._payment(amount_mwk=180000.0))
        with pytest.raises(InvariantViolation):
            enforcer.assert_amount_matches_shipment(self._payment(amount_mwk=185000.0))

    def test_completed_match_keeps_agreed_price(self, repository, completed_match):
        repository.save_match(Match(id="MAT-0", shipment_id="SHP-1", transporter_id="USR-TRANS",
                                    agreed_price_mwk=150000.0, status=MatchStatus.CANCELLED))
        enforcer = PaymentInvariantEnforcer(repository, SETTINGS)
        enforcer.assert_amount_matches_shipment(self._payment(amount_mwk=180000.0, platform_fee_mwk=0))
        with pytest.raises(InvariantViolation) as exc:
            enforcer.assert_amount_matches_shipment(self._payment(amount_mwk=185000.0, platform_fee_mwk=0))
        assert exc.value.code == "AMOUNT_MISMATCH"

    def test_missing_shipment_and_missing_price(self, repository):
        enforcer = PaymentInvariantEnforcer(repository, SETTINGS)
        with pytest.raises(InvariantViolation) as exc:
            enforcer.assert_amount_matches_shipment(self._payment(shipment_id="SHP-NOPE"))
        assert exc.value.code == "SHIPMENT_NOT_FOUND"

        repository.save_shipment(make_shipment(id="SHP-2", price_mwk=None))
        with pytest.raises(InvariantViolation) as exc:
            enforcer.assert_amount_matches_shipment(self._payment(shipment_id="SHP-2"))
        assert exc.value.code == "PRICE_NOT_AGREED"

    def test_fee_limit(self, repository):
        enforcer = PaymentInvariantEnforcer(repository, SETTINGS)
        enforcer.assert_fee_limit(185000, 18500)
        for fee in (18501, -1):
            with pytest.raises(ValidationError) as exc:
                enforcer.assert_fee_limit(185000, fee)
            assert exc.value.code == "FEE_LIMIT_EXCEEDED"

    def test_net_amount(self, repository):
        enforcer = PaymentInvariantEnforcer(repository, SETTINGS)
        enforcer.assert_net_amount(100.0, 10.0, 90.005)
        with pytest.raises(ValidationError) as exc:
            enforcer.assert_on_create(self._payment(net_amount_mwk=170000.0))
        assert exc.value.code == "NET_AMOUNT_MISMATCH"

    def test_idempotency_key(self, repository):
        enforcer = PaymentInvariantEnforcer(repository, SETTINGS)
        with pytest.raises(ValidationError) as exc:
            enforcer.assert_idempotency_key(None)
        assert exc.value.code == "MISSING_IDEMPOTENCY_KEY"

        repository.save_payment(self._payment())
        with pytest.raises(InvariantViolation) as exc:
            enforcer.assert_on_create(self._payment(id="PAY-2"))
        assert exc.value.code == "DUPLICATE_PAYMENT"

    @pytest.mark.parametrize("current,action,role", [
        (EscrowStatus.PENDING, "transporter_accepts", Role.TRANSPORTER),
        (EscrowStatus.PENDING, "shipper_cancels", "admin"),
        (EscrowStatus.IN_TRANSIT, "raise_dispute", Role.SHIPPER),
        (EscrowStatus.COMPLETED, "release_funds", "system"),
        (EscrowStatus.DISPUTED, "resolve_for_shipper", Role.ADMIN),
        (EscrowStatus.CANCELLED, "process_refund", "system"),
    ])
    def test_escrow_allowed(self, repository, current, action, role):
        PaymentInvariantEnforcer(repository, SETTINGS).assert_escrow_transition(current, action, role)

    def test_escrow_wrong_role_is_forbidden(self, repository):
        with pytest.raises(Forbidden) as exc:
            PaymentInvariantEnforcer(repository, SETTINGS).assert_escrow_transition(
                EscrowStatus.PENDING, "transporter_accepts", Role.SHIPPER
            )
        assert exc.value.code == "INSUFFICIENT_ROLE"

    def test_escrow_wrong_state_is_conflict(self, repository):
        with pytest.raises(InvariantViolation) as exc:
            PaymentInvariantEnforcer(repository, SETTINGS).assert_escrow_transition(
                EscrowStatus.RELEASED, "release_funds", Role.ADMIN
            )
        assert exc.value.code == "INVALID_TRANSITION"

    @pytest.mark.parametrize("status", [EscrowStatus.RELEASED, EscrowStatus.REFUNDED])
    def test_funds_released_once(self, repository, status):
        with pytest.raises(InvariantViolation) as exc:
            PaymentInvariantEnforcer(repository, SETTINGS).assert_not_released(status)
        assert exc.value.code == "FUNDS_ALREADY_RELEASED"

    def test_confirmation_requires_verified_webhook(self, repository):
        enforcer = PaymentInvariantEnforcer(repository, SETTINGS)
        payment = self._payment()
        with pytest.raises(SignatureMismatch):
            enforcer.assert_can_confirm(payment, webhook_verified=False)
        enforcer.assert_can_confirm(payment, webhook_verified=True)

    def test_confirmed_cannot_be_confirmed_again(self, repository):
        with pytest.raises(InvariantViolation) as exc:
            PaymentInvariantEnforcer(repository, SETTINGS).assert_can_confirm(
                self._payment(status=PaymentStatus.CONFIRMED), webhook_verified=True
            )
        assert exc.value.code == "INVALID_TRANSITION"

    @pytest.mark.parametrize("current,new", [
        (a, b) for a, b in product(PaymentStatus, PaymentStatus) if b not in PAYMENT_TRANSITIONS[a]
    ])
    def test_unlisted_payment_transitions(self, repository, current, new):
        with pytest.raises(InvariantViolation):
            PaymentInvariantEnforcer(repository, SETTINGS).assert_status_transition(current, new)

    def test_webhook_replay(self, repository):
        enforcer = PaymentInvariantEnforcer(repository, SETTINGS)
        enforcer.assert_webhook_not_replayed("airtel:TX-1:TS")
        assert repository.mark_webhook_processed("airtel:TX-1:TS")
        assert not repository.mark_webhook_processed("airtel:TX-1:TS")
        with pytest.raises(InvariantViolation) as exc:
            enforcer.assert_webhook_not_replayed("airtel:TX-1:TS")
        assert exc.value.code == "DUPLICATE_WEBHOOK"

# ============================================
# RATING ENFORCER
# ============================================

class TestRatingInvariantEnforcer:

    def _rating(self, **overrides) -> Rating:
        fields = dict(id="RAT-1", match_id="MAT-1", rater_id="USR-SHIPPER", ratee_id="USR-TRANS", score=5)
        fields.update(overrides)
        return Rating(**fields)

    def test_valid_rating_passes(self, repository, completed_match):
        RatingInvariantEnforcer(repository).assert_on_create(self._rating())
        RatingInvariantEnforcer(repository).assert_on_create(
            self._rating(rater_id="USR-TRANS", ratee_id="USR-SHIPPER", score=1)
        )

    @pytest.mark.parametrize("score", [0, 6, 4.5, 5.0, True, "5", None])
    def test_score_must_be_int_1_to_5(self, repository, score):
        with pytest.raises(ValidationError) as exc:
            RatingInvariantEnforcer(repository).assert_score_range(score)
        assert exc.value.code == "INVALID_RATING"

    def test_self_rating(self, repository):
        with pytest.raises(ValidationError) as exc:
            RatingInvariantEnforcer(repository).assert_not_self_rating("USR-TRANS", "USR-TRANS")
        assert exc.value.code == "SELF_RATING"

    def test_match_must_be_completed(self, repository):
        repository.save_match(Match(id="MAT-1", shipment_id="SHP-1", transporter_id="USR-TRANS"))
        with pytest.raises(InvariantViolation) as exc:
            RatingInvariantEnforcer(repository).assert_on_create(self._rating())
        assert exc.value.code == "RATING_NOT_ELIGIBLE"

    def test_outsider_forbidden(self, repository, completed_match):
        with pytest.raises(Forbidden) as exc:
            RatingInvariantEnforcer(repository).assert_rater_participant(completed_match, "USR-OTHER")
        assert exc.value.code == "NOT_PARTICIPANT"

    def test_ratee_must_be_other_party(self, repository, completed_match):
        with pytest.raises(ValidationError) as exc:
            RatingInvariantEnforcer(repository).assert_on_create(self._rating(ratee_id="USR-OTHER"))
        assert exc.value.code == "INVALID_RATEE"

    def test_one_rating_per_rater(self, repository, completed_match):
        repository.save_rating(self._rating())
        with pytest.raises(InvariantViolation) as exc:
            RatingInvariantEnforcer(repository).assert_on_create(self._rating(id="RAT-2"))
        assert exc.value.code == "DUPLICATE_RATING"

# ============================================
# SECURITY
# ============================================

class TestSecurity:

    SHIPPER = Principal("USR-SHIPPER", Role.SHIPPER)
    NOW = datetime(2026, 3, 1, 12, 0)

    def _context(self, principal=None, **overrides) -> RequestContext:
        fields = dict(principal=principal or self.SHIPPER, token="tok",
                      expires_at=self.NOW + timedelta(hours=1))
        fields.update(overrides)
        return RequestContext(**fields)

    @pytest.mark.parametrize("context", [None, RequestContext(), RequestContext(token="tok")])
    def test_missing_token(self, context):
        with pytest.raises(Unauthorized) as exc:
            require_authenticated(context, now=self.NOW)
        assert exc.value.code == "MISSING_TOKEN"
        assert exc.value.http_status == 401

    def test_revoked_and_expired(self):
        with pytest.raises(Unauthorized) as exc:
            require_authenticated(self._context(revoked=True), now=self.NOW)
        assert exc.value.code == "TOKEN_REVOKED"

        with pytest.raises(Unauthorized) as exc:
            require_authenticated(self._context(expires_at=self.NOW), now=self.NOW)
        assert exc.value.code == "TOKEN_EXPIRED"

    def test_role_checked_after_authentication(self):
        assert require_role(self._context(), [Role.SHIPPER, "broker"], now=self.NOW) == self.SHIPPER
        with pytest.raises(Forbidden) as exc:
            require_role(self._context(), [Role.ADMIN], now=self.NOW)
        assert exc.value.code == "INSUFFICIENT_ROLE"
        with pytest.raises(Unauthorized):
            require_role(self._context(revoked=True), [Role.SHIPPER], now=self.NOW)

    def test_resource_owner(self):
        require_resource_owner(self._context(), "USR-SHIPPER", now=self.NOW)
        require_resource_owner(self._context(Principal("ADM", Role.ADMIN)), "USR-SHIPPER", now=self.NOW)
        with pytest.raises(Forbidden) as exc:
            require_resource_owner(self._context(), "USR-OTHER", now=self.NOW)
        assert exc.value.code == "NOT_OWNER"

    def test_payment_access(self):
        require_payment_access(self._context(Principal("SUP", Role.SUPPORT)), "USR-SHIPPER", now=self.NOW)
        with pytest.raises(Forbidden):
            require_payment_access(self._context(Principal("T", Role.TRANSPORTER)), "USR-SHIPPER", now=self.NOW)

    def test_require_verified(self):
        with pytest.raises(Forbidden):
            require_verified(self.SHIPPER)
        verified = Principal("USR-T", Role.TRANSPORTER, VerificationState.VERIFIED)
        assert require_verified(verified) == verified

    def test_sanitize_for_logging(self):
        data = {"phone": "+265991000001", "Token": "abc", "nested": [{"pin_hash": "x", "ok": 1}]}
        clean = sanitize_for_logging(data)
        assert clean == {"phone": "+265991000001", "Token": "[REDACTED]",
                         "nested": [{"pin_hash": "[REDACTED]", "ok": 1}]}
        assert data["Token"] == "abc"

    def test_token_registry(self):
        tokens = TokenRegistry()
        tokens.issue("abc", self.SHIPPER)
        assert tokens.resolve("Bearer abc").principal == self.SHIPPER
        assert tokens.resolve("Basic abc").principal is None
        assert tokens.resolve(None).principal is None

        tokens.revoke("abc")
        with pytest.raises(Unauthorized) as exc:
            require_authenticated(tokens.resolve("Bearer abc"))
        assert exc.value.code == "TOKEN_REVOKED"

# ============================================
# USSD
# ============================================

class TestUssd:

    def _session(self, state=UssdState.WELCOME, context=None, updated_at=None) -> UssdSession:
        now = datetime.now()
        return UssdSession(session_id="S1", phone="+265991000001", state=state.value,
                           context=context or {}, created_at=now, updated_at=updated_at or now)

    def _menu(self) -> UssdMenu:
        return UssdMenu(UssdInvariantEnforcer(SETTINGS))

    @pytest.mark.parametrize("text,expected", [
        ("", ""), ("1", "1"), ("1*2*Lilongwe", "Lilongwe"), ("1*", "1"), (None, "")
    ])
    def test_parse_text(self, text, expected):
        assert parse_ussd_text(text) == expected

    @pytest.mark.parametrize("state,text", [
        (UssdState.WELCOME, "4"),
        (UssdState.POST_PICKUP, "Lilongwe"),
        (UssdState.POST_WEIGHT, "2500"),
        (UssdState.POST_PRICE, "0"),
        (UssdState.FIND_LOADS_LIST, "#"),
        (UssdState.ERROR_RETRY, "0"),
        (UssdState.ACCOUNT, "*"),
    ])
    def test_grammar_accepts(self, state, text):
        UssdInvariantEnforcer(SETTINGS).assert_input(state.value, text)

    @pytest.mark.parametrize("state,text", [
        (UssdState.WELCOME, "5"),
        (UssdState.POST_PICKUP, "x" * 41),
        (UssdState.POST_PICKUP, "   "),
        (UssdState.POST_WEIGHT, "-3"),
        (UssdState.POST_WEIGHT, "heavy"),
        (UssdState.POST_CONFIRM, "0"),
        (UssdState.FIND_LOADS_LIST, "8"),
        (UssdState.ERROR_RETRY, "1"),
        (UssdState.SESSION_TIMEOUT, "*"),
    ])
    def test_grammar_rejects(self, state, text):
        with pytest.raises(ValidationError) as exc:
            UssdInvariantEnforcer(SETTINGS).assert_input(state.value, text)
        assert exc.value.code == "INVALID_USSD_INPUT"

    def test_unknown_state(self):
        with pytest.raises(ValidationError) as exc:
            UssdInvariantEnforcer(SETTINGS).assert_valid_state("NOWHERE")
        assert exc.value.code == "INVALID_USSD_STATE"

    def test_context_must_be_json(self):
        enforcer = UssdInvariantEnforcer(SETTINGS)
        enforcer.assert_context_json({"origin": "Lilongwe", "history": []})
        for context in ({"when": datetime.now()}, {"weight": float("nan")}, []):
            with pytest.raises(InvariantViolation):
                enforcer.assert_context_json(context)

    def test_session_expiry(self):
        now = datetime.now()
        enforcer = UssdInvariantEnforcer(SETTINGS)
        enforcer.assert_session_active(self._session(updated_at=now - timedelta(seconds=300)), now=now)
        with pytest.raises(InvariantViolation) as exc:
            enforcer.assert_session_active(self._session(updated_at=now - timedelta(seconds=301)), now=now)
        assert exc.value.code == "SESSION_EXPIRED"

    def test_response_length(self):
        enforcer = UssdInvariantEnforcer(SETTINGS)
        enforcer.assert_response_length("x" * MAX_SCREEN_LENGTH)
        with pytest.raises(InvariantViolation):
            enforcer.assert_response_length("x" * (MAX_SCREEN_LENGTH + 1))

    def test_every_screen_fits(self):
        long_context = {"origin": "x" * 40, "destination": "y" * 40, "weight_kg": 99999.0,
                        "price_mwk": 9999999.0, "selected_load_id": "load-7", "load_page": 12}
        for state, language, is_end in product(UssdState, ("en", "ny"), (False, True)):
            assert len(render_menu(state, long_context, language, is_end)) <= MAX_SCREEN_LENGTH

    def test_post_shipment_flow(self):
        menu = self._menu()
        session = self._session()
        for text, expected in [
            ("1", UssdState.POST_PICKUP),
            ("Lilongwe", UssdState.POST_DESTINATION),
            ("Blantyre", UssdState.POST_CARGO_TYPE),
            ("1", UssdState.POST_WEIGHT),
            ("5000", UssdState.POST_PRICE),
            ("185000", UssdState.POST_CONFIRM),
        ]:
            step = menu.process_input(session, text)
            assert step.new_state == expected
            assert not step.is_end
            session = replace(session, state=step.new_state.value, context=step.context)

        assert session.context["cargo_type"] == CargoType.FOOD.value
        assert session.context["weight_kg"] == 5000.0
        assert "Lilongwe to Blantyre" in menu.render(step)

        final = menu.process_input(session, "1")
        assert final.is_end
        assert menu.render(final).startswith("Shipment posted!")

    def test_back_and_main_menu(self):
        menu = self._menu()
        step = menu.process_input(self._session(), "1")
        session = self._session(UssdState.POST_PICKUP, step.context)

        assert menu.process_input(session, "0").new_state == UssdState.MAIN_MENU
        assert menu.process_input(session, "*").new_state == UssdState.MAIN_MENU

    def test_input_does_not_mutate_session(self):
        session = self._session(UssdState.POST_PICKUP, {"history": ["MAIN_MENU"]})
        self._menu().process_input(session, "Zomba")
        assert session.context == {"history": ["MAIN_MENU"]}
        assert session.state == UssdState.POST_PICKUP.value

    def test_exit_and_accept_load_end_session(self):
        menu = self._menu()
        assert menu.process_input(self._session(), "0").is_end
        detail = self._session(UssdState.FIND_LOAD_DETAIL, {"selected_load_id": "load-3"})
        step = menu.process_input(detail, "1")
        assert (step.new_state, step.is_end) == (UssdState.FIND_LOAD_ACCEPT, True)

    def test_invalid_input_rejected_before_state_machine(self):
        with pytest.raises(ValidationError):
            self._menu().process_input(self._session(UssdState.POST_WEIGHT), "lots")

    def test_session_store(self):
        store = UssdSessionStore(ttl_seconds=300)
        start = datetime(2026, 3, 1, 12, 0)
        session = store.create("S1", "+265991000001", now=start)
        assert store.get("S1", now=start + timedelta(seconds=300)) is session
        assert store.get("S1", now=start + timedelta(seconds=301)) is None

        session = store.create("S2", "+265991000001", now=start)
        step = self._menu().process_input(replace(session, updated_at=datetime.now()), "0")
        store.advance(session, step, now=start)
        assert store.get("S2", now=start) is None

# ============================================
# COMPOSITION / LEDGER / ROLLBACK
# ============================================

class FailingPostCheck(Invariant):
    """Passes before the action, fails after it."""

    def __init__(self, id="tst_001_post_fails", dependencies=None):
        super().__init__(
            id=id,
            statement="Always fails after the action",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=dependencies or [],
            owner="tests"
        )

    def pre_check(self, **kwargs) -> bool:
        return True

    def post_check(self, result, **kwargs) -> bool:
        return False


def save_match_action(match, repository, **kwargs):
    return repository.save_match(match)


class TestInvariantEnforcerComposition:

    def _match(self, id="MAT-1", **overrides) -> Match:
        return Match(id=id, shipment_id="SHP-1", transporter_id="USR-TRANS", score=75.0, **overrides)

    def test_full_match_creation_flow(self, repository):
        ledger = DecisionLedger("test-ledger-secret")
        match_enforcer = MatchInvariantEnforcer(repository, SETTINGS)
        enforcer = InvariantEnforcer(match_enforcer.create_invariants(), ledger)

        match = enforcer.enforce_action(save_match_action, **match_enforcer.create_kwargs(self._match()))

        assert repository.get_match("MAT-1") is match
        # five pre-checks and five post-checks, all signed
        assert len(ledger.entries) == 10
        assert ledger.verify_chain_integrity()
        assert ledger.health_score() == 1.0

    def test_dependency_order(self, repository):
        match_enforcer = MatchInvariantEnforcer(repository, SETTINGS)
        invariants = list(reversed(match_enforcer.create_invariants()))
        ordered = [inv.id for inv in InvariantEnforcer(invariants).ordered]

        assert ordered.index("mat_001_shipment_matchable") < ordered.index("mat_002_single_active_match")
        assert ordered.index("mat_001_shipment_matchable") < ordered.index("mat_005_price_not_inflated")

    def test_circular_dependency_detected(self):
        with pytest.raises(SystemCompromised):
            InvariantEnforcer([
                FailingPostCheck("a", dependencies=["b"]),
                FailingPostCheck("b", dependencies=["a"]),
            ])

    def test_pre_check_failure_blocks_action(self, repository):
        repository.save_match(self._match())
        ledger = DecisionLedger("test-ledger-secret")
        match_enforcer = MatchInvariantEnforcer(repository, SETTINGS)
        enforcer = InvariantEnforcer(match_enforcer.create_invariants(), ledger)

        with pytest.raises(InvariantViolation) as exc:
            enforcer.enforce_action(save_match_action, **match_enforcer.create_kwargs(self._match("MAT-2")))

        assert exc.value.code == "DUPLICATE_ACTIVE_MATCH"
        assert repository.get_match("MAT-2") is None
        assert ledger.entries[-1].action == EnforcementResult.FREEZE
        assert ledger.health_score() < 1.0

    def test_post_check_failure_rolls_back(self, repository):
        match_enforcer = MatchInvariantEnforcer(repository, SETTINGS)
        enforcer = InvariantEnforcer([SingleActiveMatch(), FailingPostCheck()], DecisionLedger("k"))

        with pytest.raises(InvariantViolation) as exc:
            enforcer.enforce_action(save_match_action, **match_enforcer.create_kwargs(self._match()))

        assert exc.value.code == "POST_CHECK_FAILED"
        assert repository.get_match("MAT-1") is None

    def test_ledger_detects_tampering(self):
        ledger = DecisionLedger("test-ledger-secret")
        ledger.record(ledger.sign("mat_001_shipment_matchable", "PRE", False, EnforcementResult.FREEZE))
        assert ledger.verify_chain_integrity()

        ledger._entries[0] = replace(ledger._entries[0], result=True, action=EnforcementResult.PROCEED)
        assert not ledger.verify_chain_integrity()

    def test_ledger_rejects_foreign_signature(self):
        ours = DecisionLedger("ours")
        theirs = DecisionLedger("theirs")
        with pytest.raises(SystemCompromised):
            ours.record(theirs.sign("x", "PRE", True, EnforcementResult.PROCEED))

    def test_ledger_requires_secret(self):
        with pytest.raises(ValueError):
            DecisionLedger("")

    def test_errors_serialise_without_internals(self):
        for error, status in [
            (ValidationError("bad"), 400),
            (OutOfRegion("Origin coordinates outside Malawi"), 400),
            (InvariantViolation("dup", code="DUPLICATE_ACTIVE_MATCH"), 409),
            (Unauthorized("no"), 401),
            (Forbidden("no"), 403),
            (SignatureMismatch("Invalid signature"), 401),
            (SystemCompromised("rollback failed"), 500),
            (MatolaError(), 500),
        ]:
            assert error.http_status == status
            assert set(error.to_response()) == {"error", "code"}
        assert OutOfRegion("x").to_response() == {"error": "x", "code": "OUT_OF_REGION"}

    @pytest.mark.parametrize("module,name", [
        ("matola_invariants_v1", "matola.invariants"),
        ("matola_remaining_invariants_v1", "matola.payments"),
        ("matola_security_v1", "matola.security"),
        ("matola_ussd_v1", "matola.ussd"),
    ])
    def test_module_loggers_are_named(self, module, name):
        assert importlib.import_module(module).logger.name == name

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
