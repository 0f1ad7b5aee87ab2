"""
Matola - API Tests
HTTP surface: error mapping, authentication, webhook and USSD callbacks.
"""

import json
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from matola_config import MatolaSettings
from matola_main_api import AppState, app, get_app_state
from matola_models_v1 import (
    CargoType,
    Coordinate,
    Match,
    MatchStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
    Principal,
    Role,
    Shipment,
    User,
    VerificationState,
)
from matola_ussd_v1 import UssdSessionStore
from matola_webhook_v1 import generate_signature

AIRTEL_SECRET = "airtel-test-secret"
TNM_SECRET = "tnm-test-secret"

SHIPMENT_BODY = {
    "cargo_type": "agricultural",
    "weight_kg": 5000,
    "origin": {"lat": -13.9626, "lng": 33.7741},
    "destination": {"lat": -15.7861, "lng": 35.0058},
    "origin_name": "Lilongwe",
    "destination_name": "Blantyre",
    "price_mwk": 185000,
}


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def state():
    """Fresh application state with one user per role and a pending shipment."""
    state = AppState(MatolaSettings(
        AIRTEL_WEBHOOK_SECRET=AIRTEL_SECRET,
        TNM_WEBHOOK_SECRET=TNM_SECRET,
    ))
    repo = state.repository
    repo.save_user(User(id="USR-SHIPPER", phone="+265991000001", role=Role.SHIPPER))
    repo.save_user(User(id="USR-TRANS", phone="+265881000002", role=Role.TRANSPORTER,
                        verification=VerificationState.VERIFIED))
    repo.save_user(User(id="USR-TRANS2", phone="+265881000004", role=Role.TRANSPORTER,
                        verification=VerificationState.VERIFIED))
    repo.save_shipment(Shipment(
        id="SHP-1", shipper_id="USR-SHIPPER", cargo_type=CargoType.FOOD, weight_kg=5000.0,
        origin=Coordinate(-13.9626, 33.7741), destination=Coordinate(-15.7861, 35.0058),
        origin_name="Lilongwe", destination_name="Blantyre", price_mwk=185000.0
    ))

    state.tokens.issue("shipper", Principal("USR-SHIPPER", Role.SHIPPER))
    state.tokens.issue("shipper2", Principal("USR-SHIPPER2", Role.SHIPPER))
    state.tokens.issue("transporter", Principal("USR-TRANS", Role.TRANSPORTER, VerificationState.VERIFIED))
    state.tokens.issue("transporter2", Principal("USR-TRANS2", Role.TRANSPORTER, VerificationState.VERIFIED))
    state.tokens.issue("support", Principal("USR-SUPPORT", Role.SUPPORT))
    return state


@pytest.fixture
def client(state):
    app.dependency_overrides[get_app_state] = lambda: state
    yield TestClient(app)
    app.dependency_overrides.clear()


def add_payment(state, **overrides) -> Payment:
    fields = dict(id="PAY-1", shipment_id="SHP-1", payer_id="USR-SHIPPER",
                  provider=PaymentProvider.AIRTEL_MONEY, amount_mwk=185000.0,
                  idempotency_key="key-1", reference="REF-1")
    fields.update(overrides)
    return state.repository.save_payment(Payment(**fields))

# ============================================
# HEALTH / METRICS
# ============================================

class TestHealth:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "Matola"

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["ledger_integrity"] is True
        assert body["total_shipments"] == 1

    def test_metrics(self, client):
        client.post("/api/v1/shipments", json=SHIPMENT_BODY)
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "matola_api_errors_total" in response.text

# ============================================
# SHIPMENTS
# ============================================

class TestShipmentEndpoint:

    def test_requires_token(self, client):
        response = client.post("/api/v1/shipments", json=SHIPMENT_BODY)
        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required", "code": "MISSING_TOKEN"}

    def test_requires_shipper_role(self, client):
        response = client.post("/api/v1/shipments", json=SHIPMENT_BODY, headers=bearer("transporter"))
        assert response.status_code == 403
        assert response.json()["code"] == "INSUFFICIENT_ROLE"

    def test_create(self, client, state):
        response = client.post("/api/v1/shipments", json=SHIPMENT_BODY, headers=bearer("shipper"))

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["shipper_id"] == "USR-SHIPPER"
        assert 230 < body["distance_km"] < 255
        assert state.repository.get_shipment(body["id"]) is not None

    def test_destination_outside_region(self, client, state):
        body = dict(SHIPMENT_BODY, destination={"lat": -1.2921, "lng": 36.8219}, destination_name="Nairobi")
        response = client.post("/api/v1/shipments", json=body, headers=bearer("shipper"))

        assert response.status_code == 400
        assert response.json() == {"error": "Destination coordinates outside Malawi", "code": "OUT_OF_REGION"}
        assert len(state.repository.shipments) == 1

    def test_negative_weight(self, client):
        body = dict(SHIPMENT_BODY, weight_kg=-5)
        response = client.post("/api/v1/shipments", json=body, headers=bearer("shipper"))
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_WEIGHT"

    def test_malformed_body(self, client):
        body = {k: v for k, v in SHIPMENT_BODY.items() if k != "weight_kg"}
        response = client.post("/api/v1/shipments", json=body, headers=bearer("shipper"))
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

# ============================================
# MATCHES
# ============================================

class TestMatchEndpoint:

    def test_create_records_ledger(self, client, state):
        response = client.post("/api/v1/matches", json={"shipment_id": "SHP-1", "agreed_price_mwk": 180000},
                               headers=bearer("transporter"))

        assert response.status_code == 201
        assert response.json()["transporter_id"] == "USR-TRANS"
        assert len(state.decision_ledger.entries) == 10
        assert state.decision_ledger.verify_chain_integrity()

    def test_second_active_match_conflicts(self, client, state):
        client.post("/api/v1/matches", json={"shipment_id": "SHP-1"}, headers=bearer("transporter"))
        response = client.post("/api/v1/matches", json={"shipment_id": "SHP-1"}, headers=bearer("transporter2"))

        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_ACTIVE_MATCH"
        assert len(state.repository.matches) == 1

    def test_transporter_cannot_match_someone_else(self, client):
        response = client.post("/api/v1/matches", json={"shipment_id": "SHP-1", "transporter_id": "USR-TRANS2"},
                               headers=bearer("transporter"))
        assert response.status_code == 403
        assert response.json()["code"] == "NOT_OWNER"

    def test_unknown_shipment(self, client):
        response = client.post("/api/v1/matches", json={"shipment_id": "SHP-NOPE"}, headers=bearer("transporter"))
        assert response.status_code == 409
        assert response.json()["code"] == "SHIPMENT_NOT_FOUND"

# ============================================
# RATINGS
# ============================================

class TestRatingEndpoint:

    @pytest.fixture(autouse=True)
    def completed_match(self, state):
        state.repository.save_match(Match(id="MAT-1", shipment_id="SHP-1", transporter_id="USR-TRANS",
                                          status=MatchStatus.COMPLETED))

    def test_create_and_duplicate(self, client):
        body = {"match_id": "MAT-1", "ratee_id": "USR-TRANS", "score": 5}
        first = client.post("/api/v1/ratings", json=body, headers=bearer("shipper"))
        second = client.post("/api/v1/ratings", json=body, headers=bearer("shipper"))

        assert first.status_code == 201
        assert first.json()["rater_id"] == "USR-SHIPPER"
        assert second.status_code == 409
        assert second.json()["code"] == "DUPLICATE_RATING"

    @pytest.mark.parametrize("score", [0, 6, 4.5, "five"])
    def test_invalid_score(self, client, score):
        body = {"match_id": "MAT-1", "ratee_id": "USR-TRANS", "score": score}
        response = client.post("/api/v1/ratings", json=body, headers=bearer("shipper"))
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_RATING"

    def test_outsider_forbidden(self, client):
        body = {"match_id": "MAT-1", "ratee_id": "USR-TRANS", "score": 4}
        response = client.post("/api/v1/ratings", json=body, headers=bearer("transporter2"))
        assert response.status_code == 403
        assert response.json()["code"] == "NOT_PARTICIPANT"

# ============================================
# PAYMENTS
# ============================================

class TestPaymentEndpoints:

    BODY = {"shipment_id": "SHP-1", "provider": "airtel_money", "amount_mwk": 185000,
            "platform_fee_mwk": 9250, "idempotency_key": "pay-shp-1"}

    def test_create(self, client, state):
        response = client.post("/api/v1/payments", json=self.BODY, headers=bearer("shipper"))

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["net_amount_mwk"] == 175750
        assert state.repository.get_payment(body["id"]).reference == body["reference"]

    def test_duplicate_key(self, client):
        client.post("/api/v1/payments", json=self.BODY, headers=bearer("shipper"))
        response = client.post("/api/v1/payments", json=self.BODY, headers=bearer("shipper"))
        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_PAYMENT"

    def test_missing_key(self, client):
        body = {k: v for k, v in self.BODY.items() if k != "idempotency_key"}
        response = client.post("/api/v1/payments", json=body, headers=bearer("shipper"))
        assert response.status_code == 400
        assert response.json()["code"] == "MISSING_IDEMPOTENCY_KEY"

    def test_amount_mismatch(self, client):
        response = client.post("/api/v1/payments", json=dict(self.BODY, amount_mwk=150000, platform_fee_mwk=0),
                               headers=bearer("shipper"))
        assert response.status_code == 409
        assert response.json()["code"] == "AMOUNT_MISMATCH"

    def test_provider_from_payer_number(self, client, state):
        body = {k: v for k, v in self.BODY.items() if k != "provider"}
        response = client.post("/api/v1/payments", json=body, headers=bearer("shipper"))

        assert response.status_code == 201
        assert state.repository.get_payment(response.json()["id"]).provider == PaymentProvider.AIRTEL_MONEY

    def test_provider_required_without_known_number(self, client, state):
        state.tokens.issue("broker", Principal("USR-BROKER", Role.BROKER))
        body = {k: v for k, v in self.BODY.items() if k != "provider"}
        response = client.post("/api/v1/payments", json=body, headers=bearer("broker"))
        assert response.status_code == 400
        assert response.json()["code"] == "PROVIDER_REQUIRED"

    def test_other_shipper_forbidden(self, client):
        response = client.post("/api/v1/payments", json=self.BODY, headers=bearer("shipper2"))
        assert response.status_code == 403
        assert response.json()["code"] == "NOT_OWNER"

    @pytest.mark.parametrize("token,status", [("shipper", 200), ("support", 200), ("shipper2", 403)])
    def test_read_access(self, client, state, token, status):
        add_payment(state)
        response = client.get("/api/v1/payments/PAY-1", headers=bearer(token))
        assert response.status_code == status

    def test_unknown_payment_looks_forbidden(self, client):
        response = client.get("/api/v1/payments/PAY-NOPE", headers=bearer("shipper"))
        assert response.status_code == 403
        assert response.json()["code"] == "PAYMENT_ACCESS_DENIED"

# ============================================
# PAYMENT WEBHOOKS
# ============================================

def airtel_body(status_code="TS", reference="REF-1", transaction_id="TX-1") -> bytes:
    return json.dumps({
        "transaction": {"id": transaction_id, "status_code": status_code},
        "reference": reference,
    }).encode()


def post_airtel(client, body: bytes, secret: str = AIRTEL_SECRET):
    return client.post(
        "/api/v1/payments/webhook/airtel",
        content=body,
        headers={"X-Airtel-Signature": generate_signature(body, secret), "Content-Type": "application/json"},
    )


class TestPaymentWebhook:

    def test_confirms_payment(self, client, state):
        add_payment(state)
        response = post_airtel(client, airtel_body())

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "confirmed"}
        payment = state.repository.get_payment("PAY-1")
        assert payment.status == PaymentStatus.CONFIRMED
        assert payment.provider_reference == "TX-1"

    def test_replay_has_no_effect(self, client, state):
        add_payment(state)
        post_airtel(client, airtel_body())
        response = post_airtel(client, airtel_body())

        assert response.status_code == 200
        assert response.json() == {"received": True, "duplicate": True}

    def test_wrong_secret_rejected(self, client, state):
        add_payment(state)
        response = post_airtel(client, airtel_body(), secret="someone-else")

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_SIGNATURE"
        assert state.repository.get_payment("PAY-1").status == PaymentStatus.PENDING

    def test_missing_signature_rejected(self, client, state):
        add_payment(state)
        response = client.post("/api/v1/payments/webhook/airtel", content=airtel_body())
        assert response.status_code == 401

    def test_unconfigured_provider_rejected(self, client, state):
        state.secret_store.settings = MatolaSettings(AIRTEL_WEBHOOK_SECRET=AIRTEL_SECRET, TNM_WEBHOOK_SECRET=None)
        body = json.dumps({"transactionId": "T9", "resultCode": "0", "reference": "REF-1"}).encode()
        response = client.post("/api/v1/payments/webhook/tnm", content=body,
                               headers={"X-TNM-Signature": generate_signature(body, TNM_SECRET)})
        assert response.status_code == 401

    def test_tnm_failure_code(self, client, state):
        add_payment(state, provider=PaymentProvider.TNM_MPAMBA)
        body = json.dumps({"transactionId": "T9", "resultCode": 17, "reference": "REF-1"}).encode()
        response = client.post("/api/v1/payments/webhook/tnm", content=body,
                               headers={"X-TNM-Signature": generate_signature(body, TNM_SECRET)})

        assert response.status_code == 200
        assert state.repository.get_payment("PAY-1").status == PaymentStatus.FAILED

    def test_unknown_provider(self, client):
        response = client.post("/api/v1/payments/webhook/mpesa", content=b"{}")
        assert response.status_code == 400
        assert response.json()["code"] == "UNKNOWN_PROVIDER"

    def test_unknown_reference(self, client):
        response = post_airtel(client, airtel_body(reference="REF-NOPE"))
        assert response.status_code == 409
        assert response.json()["code"] == "PAYMENT_NOT_FOUND"

    def test_signed_garbage_is_bad_request(self, client):
        response = post_airtel(client, b"not json")
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_WEBHOOK_PAYLOAD"

    def test_confirmed_payment_cannot_fail(self, client, state):
        add_payment(state, status=PaymentStatus.CONFIRMED)
        response = post_airtel(client, airtel_body(status_code="TF", transaction_id="TX-2"))
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

# ============================================
# USSD
# ============================================

class TestUssdEndpoint:

    def _dial(self, client, text, session_id="ATUid_1", phone="+265991777888"):
        return client.post("/api/v1/ussd", data={
            "sessionId": session_id, "serviceCode": "*384*628652#", "phoneNumber": phone, "text": text
        })

    def test_post_shipment_end_to_end(self, client, state):
        inputs = ["", "1", "1*Lilongwe", "1*Lilongwe*Blantyre", "1*Lilongwe*Blantyre*1",
                  "1*Lilongwe*Blantyre*1*5000", "1*Lilongwe*Blantyre*1*5000*185000"]
        for text in inputs:
            response = self._dial(client, text)
            assert response.status_code == 200
            assert response.text.startswith("CON ")
            assert len(response.text) <= 164

        final = self._dial(client, "1*Lilongwe*Blantyre*1*5000*185000*1")
        assert final.text.startswith("END Shipment posted!")

        user = state.repository.get_user_by_phone("+265991777888")
        assert user.role == Role.SHIPPER
        assert user.verification == VerificationState.UNVERIFIED
        shipments = [s for s in state.repository.shipments.values() if s.shipper_id == user.id]
        assert len(shipments) == 1
        assert shipments[0].destination_name == "Blantyre"

    def test_welcome_screen(self, client):
        response = self._dial(client, "")
        assert response.text.startswith("CON Welcome to Matola")

    def test_invalid_input_offers_retry(self, client):
        self._dial(client, "")
        response = self._dial(client, "9")
        assert response.text.startswith("CON Invalid input")

    def test_exit(self, client):
        self._dial(client, "")
        assert self._dial(client, "0").text == "END Thank you for using Matola."

    def test_unknown_session_times_out(self, client):
        response = self._dial(client, "1*2", session_id="never-started")
        assert response.text.startswith("END Session timed out")

    def test_unknown_town(self, client, state):
        for text in ["", "1", "1*Nairobi", "1*Nairobi*Blantyre", "1*Nairobi*Blantyre*2",
                     "1*Nairobi*Blantyre*2*100", "1*Nairobi*Blantyre*2*100*5000"]:
            self._dial(client, text)
        response = self._dial(client, "1*Nairobi*Blantyre*2*100*5000*1")

        assert response.text.startswith("END Could not post shipment")
        assert len(state.repository.shipments) == 1

    def test_form_encoded_post(self, client):
        response = client.post(
            "/api/v1/ussd",
            content="sessionId=ATUid_9&serviceCode=%2A384%2A628652%23&phoneNumber=%2B265991777888&text=",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 200
        assert response.text.startswith("CON Welcome to Matola")

    def test_invalid_phone_ends_session(self, client):
        response = self._dial(client, "", phone="0991777888")
        assert response.status_code == 200
        assert response.text == "END Invalid request. Please try again."

    def test_session_expiring_mid_request_ends_session(self, client, state):
        state.ussd_sessions = UssdSessionStore(ttl_seconds=3600)
        self._dial(client, "")
        session = state.ussd_sessions.get("ATUid_1")
        session.updated_at = datetime.now() - timedelta(seconds=state.settings.USSD_SESSION_TTL_SECONDS + 60)

        response = self._dial(client, "1")

        assert response.status_code == 200
        assert response.text.startswith("END Session timed out")
        assert state.ussd_sessions.get("ATUid_1") is None
