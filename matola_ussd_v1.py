"""
Matola - USSD Menu Enforcement
Version: 1.0.0

Feature-phone channel. The gateway posts the cumulative input ("1*2*Lilongwe")
on every step; each menu state has an explicit input grammar and input
outside it is rejected before the state machine runs. Screens are limited
to 160 characters.
"""

import logging
import copy
import json
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from matola_config import MatolaSettings, get_settings
from matola_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    EntityEnforcer,
    EnforcementReport,
    ValidationError
)
from matola_models_v1 import CargoType, UssdSession

logger = logging.getLogger("matola.ussd")

MAX_SCREEN_LENGTH = 160
MAX_FREE_TEXT_LENGTH = 40
SHORT_CODE = "*384*628652#"


class UssdState(str, Enum):
    WELCOME = "WELCOME"
    MAIN_MENU = "MAIN_MENU"
    # Post shipment
    POST_PICKUP = "POST_PICKUP"
    POST_DESTINATION = "POST_DESTINATION"
    POST_CARGO_TYPE = "POST_CARGO_TYPE"
    POST_WEIGHT = "POST_WEIGHT"
    POST_PRICE = "POST_PRICE"
    POST_CONFIRM = "POST_CONFIRM"
    # Find load
    FIND_LOADS_LIST = "FIND_LOADS_LIST"
    FIND_LOAD_DETAIL = "FIND_LOAD_DETAIL"
    FIND_LOAD_ACCEPT = "FIND_LOAD_ACCEPT"
    # My shipments
    MY_SHIPMENTS = "MY_SHIPMENTS"
    SHIPMENT_DETAIL = "SHIPMENT_DETAIL"
    # Account
    ACCOUNT = "ACCOUNT"
    ACCOUNT_BALANCE = "ACCOUNT_BALANCE"
    ACCOUNT_WITHDRAW = "ACCOUNT_WITHDRAW"
    # Errors
    ERROR_RETRY = "ERROR_RETRY"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"


@dataclass(frozen=True)
class InputGrammar:
    """Accepted inputs for one menu state."""
    choices: FrozenSet[str] = frozenset()
    free_text: bool = False
    positive_number: bool = False

    def accepts(self, text: str) -> bool:
        if text in self.choices:
            return True
        if self.free_text:
            stripped = text.strip()
            return 0 < len(stripped) <= MAX_FREE_TEXT_LENGTH and "*" not in stripped
        if self.positive_number:
            return parse_positive_number(text) is not None
        return False


def _choices(*options: str) -> FrozenSet[str]:
    return frozenset(options)


GLOBAL_MAIN_MENU = "*"

USSD_GRAMMAR: Dict[UssdState, InputGrammar] = {
    UssdState.WELCOME: InputGrammar(_choices("1", "2", "3", "4", "0")),
    UssdState.MAIN_MENU: InputGrammar(_choices("1", "2", "3", "4", "0")),
    UssdState.POST_PICKUP: InputGrammar(_choices("0"), free_text=True),
    UssdState.POST_DESTINATION: InputGrammar(_choices("0"), free_text=True),
    UssdState.POST_CARGO_TYPE: InputGrammar(_choices("1", "2", "3", "0")),
    UssdState.POST_WEIGHT: InputGrammar(_choices("0"), positive_number=True),
    UssdState.POST_PRICE: InputGrammar(_choices("0"), positive_number=True),
    UssdState.POST_CONFIRM: InputGrammar(_choices("1", "2")),
    UssdState.FIND_LOADS_LIST: InputGrammar(_choices("1", "2", "3", "4", "5", "6", "7", "#", "0")),
    UssdState.FIND_LOAD_DETAIL: InputGrammar(_choices("1", "2", "0")),
    UssdState.FIND_LOAD_ACCEPT: InputGrammar(),
    UssdState.MY_SHIPMENTS: InputGrammar(_choices("1", "2", "0")),
    UssdState.SHIPMENT_DETAIL: InputGrammar(_choices("1", "0")),
    UssdState.ACCOUNT: InputGrammar(_choices("1", "2", "3", "0")),
    UssdState.ACCOUNT_BALANCE: InputGrammar(_choices("1", "0")),
    UssdState.ACCOUNT_WITHDRAW: InputGrammar(_choices("1", "2", "0")),
    UssdState.ERROR_RETRY: InputGrammar(_choices("0")),
    UssdState.SESSION_TIMEOUT: InputGrammar(),
}

USSD_CARGO_TYPES: Dict[str, CargoType] = {
    "1": CargoType.FOOD,
    "2": CargoType.BUILDING_MATERIALS,
    "3": CargoType.OTHER,
}


def parse_ussd_text(text: Optional[str]) -> str:
    """Latest input from the gateway's cumulative text. Empty means session start."""
    parts = [part for part in (text or "").split("*") if part]
    return parts[-1] if parts else ""


def parse_positive_number(text: str) -> Optional[float]:
    try:
        value = float(text)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def format_mwk(amount: float) -> str:
    return f"MK {amount:,.0f}"

# ============================================
# MENU TEXT
# ============================================

MenuText = Callable[[Dict[str, Any]], str]

MENUS: Dict[UssdState, Dict[str, MenuText]] = {
    UssdState.WELCOME: {
        'en': lambda ctx: "Welcome to Matola\n1. Post Shipment\n2. Find Load\n3. My Shipments\n4. Account\n0. Exit",
        'ny': lambda ctx: "Takulandirani ku Matola\n1. Ikani Katundu\n2. Pezani Katundu\n3. Katundu Wanga\n4. Akaunti\n0. Tulukani",
    },
    UssdState.MAIN_MENU: {
        'en': lambda ctx: "Main Menu\n1. Post Shipment\n2. Find Load\n3. My Shipments\n4. Account\n0. Exit",
        'ny': lambda ctx: "Menu Yaikulu\n1. Ikani Katundu\n2. Pezani Katundu\n3. Katundu Wanga\n4. Akaunti\n0. Tulukani",
    },
    UssdState.POST_PICKUP: {
        'en': lambda ctx: "Enter pickup location:\n0. Back",
        'ny': lambda ctx: "Lembani malo otenga katundu:\n0. Bwerera",
    },
    UssdState.POST_DESTINATION: {
        'en': lambda ctx: "Enter destination:\n0. Back",
        'ny': lambda ctx: "Lembani malo operekera:\n0. Bwerera",
    },
    UssdState.POST_CARGO_TYPE: {
        'en': lambda ctx: "Enter cargo type:\n1. Food\n2. Building Materials\n3. Other\n0. Back",
        'ny': lambda ctx: "Sankhani mtundu:\n1. Chakudya\n2. Zomangira\n3. Zina\n0. Bwerera",
    },
    UssdState.POST_WEIGHT: {
        'en': lambda ctx: "Enter weight (kg):\n0. Back",
        'ny': lambda ctx: "Lembani kulemera (kg):\n0. Bwerera",
    },
    UssdState.POST_PRICE: {
        'en': lambda ctx: "Enter price (MWK):\n0. Back",
        'ny': lambda ctx: "Lembani mtengo (MWK):\n0. Bwerera",
    },
    UssdState.POST_CONFIRM: {
        'en': lambda ctx: (
            f"Confirm shipment:\n{ctx.get('origin')} to {ctx.get('destination')}\n"
            f"{ctx.get('weight_kg')}kg, {format_mwk(ctx.get('price_mwk') or 0)}\n1. Yes\n2. Edit"
        ),
        'ny': lambda ctx: (
            f"Tsimikizirani:\n{ctx.get('origin')} ku {ctx.get('destination')}\n"
            f"{ctx.get('weight_kg')}kg, {format_mwk(ctx.get('price_mwk') or 0)}\n1. Inde\n2. Sinthani"
        ),
    },
    UssdState.FIND_LOADS_LIST: {
        'en': lambda ctx: f"Available Loads (page {ctx.get('load_page', 1)}):\nReply 1-7 to view\n0. Back\n#. Next Page",
        'ny': lambda ctx: f"Katundu Wopezeka (tsamba {ctx.get('load_page', 1)}):\nSankhani 1-7\n0. Bwerera\n#. Tsamba lina",
    },
    UssdState.FIND_LOAD_DETAIL: {
        'en': lambda ctx: f"Load {ctx.get('selected_load_id')}\n1. Accept\n2. Back",
        'ny': lambda ctx: f"Katundu {ctx.get('selected_load_id')}\n1. Tengani\n2. Bwerera",
    },
    UssdState.FIND_LOAD_ACCEPT: {
        'en': lambda ctx: "Load accepted!\nYou will receive SMS with pickup details.",
        'ny': lambda ctx: "Mwatenga!\nMudzalandira SMS ndi zambiri.",
    },
    UssdState.MY_SHIPMENTS: {
        'en': lambda ctx: "My Shipments:\n1. Active\n2. Pending\n0. Back",
        'ny': lambda ctx: "Katundu Wanga:\n1. Pa Njira\n2. Akudikira\n0. Bwerera",
    },
    UssdState.SHIPMENT_DETAIL: {
        'en': lambda ctx: "Shipment details\n1. Call Driver\n0. Back",
        'ny': lambda ctx: "Zambiri za katundu\n1. Imbani Driver\n0. Bwerera",
    },
    UssdState.ACCOUNT: {
        'en': lambda ctx: "Account Menu:\n1. Check Balance\n2. Withdraw\n3. Transaction History\n0. Back",
        'ny': lambda ctx: "Akaunti:\n1. Onani Ndalama\n2. Tulutsani\n3. Mbiri ya Ndalama\n0. Bwerera",
    },
    UssdState.ACCOUNT_BALANCE: {
        'en': lambda ctx: f"Your Balance: {format_mwk(ctx.get('balance_mwk') or 0)}\n1. Withdraw\n0. Back",
        'ny': lambda ctx: f"Ndalama Zanu: {format_mwk(ctx.get('balance_mwk') or 0)}\n1. Tulutsani\n0. Bwerera",
    },
    UssdState.ACCOUNT_WITHDRAW: {
        'en': lambda ctx: "Withdraw to:\n1. Airtel Money\n2. TNM Mpamba\n0. Cancel",
        'ny': lambda ctx: "Tulutsani ku:\n1. Airtel Money\n2. TNM Mpamba\n0. Lekani",
    },
    UssdState.ERROR_RETRY: {
        'en': lambda ctx: "Invalid input. Please try again.\n0. Main Menu",
        'ny': lambda ctx: "Cholakwika. Yesaninso.\n0. Menu Yaikulu",
    },
    UssdState.SESSION_TIMEOUT: {
        'en': lambda ctx: f"Session timed out.\nDial {SHORT_CODE} to continue.",
        'ny': lambda ctx: f"Nthawi yatha.\nImbani {SHORT_CODE} kuti mupitirize.",
    },
}


END_MESSAGES: Dict[UssdState, Dict[str, str]] = {
    UssdState.MAIN_MENU: {
        'en': "Thank you for using Matola.",
        'ny': "Zikomo pogwiritsa ntchito Matola.",
    },
    UssdState.POST_CONFIRM: {
        'en': "Shipment posted!\nTransporters will be notified by SMS.",
        'ny': "Katundu waikidwa!\nAnyamula katundu adzadziwitsidwa ndi SMS.",
    },
    UssdState.SHIPMENT_DETAIL: {
        'en': "Connecting you to the driver...",
        'ny': "Tikukulumikizani ndi driver...",
    },
    UssdState.ACCOUNT: {
        'en': "Your transaction history will be sent by SMS.",
        'ny': "Mbiri ya ndalama idzatumizidwa ndi SMS.",
    },
    UssdState.ACCOUNT_WITHDRAW: {
        'en': "Withdrawal requested.\nYou will receive an SMS confirmation.",
        'ny': "Mwapempha kutulutsa ndalama.\nMudzalandira SMS.",
    },
}


def render_menu(state: UssdState, context: Dict[str, Any], language: str = "en", is_end: bool = False) -> str:
    """Screen text for a state, cut to the 160 character USSD limit."""
    if is_end and state in END_MESSAGES:
        messages = END_MESSAGES[state]
        text = messages.get(language) or messages['en']
    else:
        texts = MENUS.get(state) or MENUS[UssdState.WELCOME]
        text = (texts.get(language) or texts['en'])(context)
    if len(text) > MAX_SCREEN_LENGTH:
        return text[:MAX_SCREEN_LENGTH - 3] + "..."
    return text

# ============================================
# INVARIANTS
# ============================================

class UssdStateKnown(Invariant):
    error_class = ValidationError
    code = "INVALID_USSD_STATE"

    def __init__(self):
        super().__init__(
            id="ussd_001_state_known",
            statement="Unknown USSD menu state",
            type=InvariantType.STATE,
            criticality=Criticality.CRITICAL,
            dependencies=[],
            owner="ussd_service"
        )

    def pre_check(self, state: Any = None, **kwargs) -> bool:
        return isinstance(state, str) and state in {s.value for s in UssdState}


class UssdInputAllowed(Invariant):
    """Input must belong to the grammar of the current menu state."""

    error_class = ValidationError
    code = "INVALID_USSD_INPUT"

    def __init__(self):
        super().__init__(
            id="ussd_002_input_allowed",
            statement="Invalid input for this menu",
            type=InvariantType.STATE,
            criticality=Criticality.IMPORTANT,
            dependencies=["ussd_001_state_known"],
            owner="ussd_service"
        )

    def pre_check(self, state: Any = None, text: Optional[str] = None, **kwargs) -> bool:
        if not isinstance(text, str):
            return False
        state = UssdState(state)
        if text == GLOBAL_MAIN_MENU:
            return state != UssdState.SESSION_TIMEOUT
        return USSD_GRAMMAR[state].accepts(text)

    def describe(self, state: Any = None, text: Optional[str] = None, **kwargs) -> str:
        return f"Invalid input {text!r} for menu {getattr(state, 'value', state)}"


class UssdResponseLength(Invariant):
    code = "USSD_RESPONSE_TOO_LONG"

    def __init__(self):
        super().__init__(
            id="ussd_003_response_length",
            statement=f"USSD screens must not exceed {MAX_SCREEN_LENGTH} characters",
            type=InvariantType.STATE,
            criticality=Criticality.IMPORTANT,
            dependencies=[],
            owner="ussd_service"
        )

    def pre_check(self, response: Optional[str] = None, **kwargs) -> bool:
        return isinstance(response, str) and len(response) <= MAX_SCREEN_LENGTH


class UssdContextSerializable(Invariant):
    """Session context is stored as JSON between gateway requests."""

    code = "INVALID_USSD_CONTEXT"

    def __init__(self):
        super().__init__(
            id="ussd_004_context_serializable",
            statement="USSD session context must be JSON serializable",
            type=InvariantType.DATA_INTEGRITY,
            criticality=Criticality.IMPORTANT,
            dependencies=[],
            owner="ussd_service"
        )

    def pre_check(self, context: Any = None, **kwargs) -> bool:
        if not isinstance(context, dict):
            return False
        try:
            json.dumps(context, allow_nan=False)
        except (TypeError, ValueError):
            return False
        return True


class UssdSessionActive(Invariant):
    code = "SESSION_EXPIRED"

    def __init__(self):
        super().__init__(
            id="ussd_005_session_active",
            statement="USSD session has expired",
            type=InvariantType.TEMPORAL,
            criticality=Criticality.IMPORTANT,
            dependencies=[],
            owner="ussd_service"
        )

    def pre_check(self, session: UssdSession = None, now: Optional[datetime] = None,
                  ttl_seconds: int = 300, **kwargs) -> bool:
        now = now or datetime.now()
        return now - session.updated_at <= timedelta(seconds=ttl_seconds)

# ============================================
# ENFORCER
# ============================================

class UssdInvariantEnforcer(EntityEnforcer):
    def __init__(self, settings: Optional[MatolaSettings] = None):
        self.settings = settings or get_settings()
        self.state_known = UssdStateKnown()
        self.input_allowed = UssdInputAllowed()
        self.response_length = UssdResponseLength()
        self.context_json = UssdContextSerializable()
        self.session_active = UssdSessionActive()

    def assert_valid_state(self, state: Any):
        self.require(self.state_known, state=state)

    def assert_input(self, state: Any, text: str):
        self.assert_valid_state(state)
        self.require(self.input_allowed, state=state, text=text)

    def assert_response_length(self, response: str):
        self.require(self.response_length, response=response)

    def assert_context_json(self, context: Dict[str, Any]):
        self.require(self.context_json, context=context)

    def assert_session_active(self, session: UssdSession, now: Optional[datetime] = None):
        self.require(self.session_active, session=session, now=now,
                     ttl_seconds=self.settings.USSD_SESSION_TTL_SECONDS)

    def check_all(self, session: UssdSession, text: str, now: Optional[datetime] = None) -> EnforcementReport:
        return self.evaluate([
            (self.session_active, {
                'session': session, 'now': now, 'ttl_seconds': self.settings.USSD_SESSION_TTL_SECONDS
            }),
            (self.context_json, {'context': session.context}),
            (self.state_known, {'state': session.state}),
            (self.input_allowed, {'state': session.state, 'text': text}),
        ])

# ============================================
# STATE MACHINE
# ============================================

@dataclass(frozen=True)
class UssdStep:
    new_state: UssdState
    context: Dict[str, Any] = field(default_factory=dict)
    is_end: bool = False


class UssdMenu:
    """Menu state machine. Input is validated against the state's grammar first."""

    def __init__(self, enforcer: Optional[UssdInvariantEnforcer] = None):
        self.enforcer = enforcer or UssdInvariantEnforcer()
        self._handlers: Dict[UssdState, Callable[[str, Dict[str, Any]], Tuple[UssdState, bool]]] = {
            UssdState.WELCOME: self._main_menu,
            UssdState.MAIN_MENU: self._main_menu,
            UssdState.POST_PICKUP: self._post_pickup,
            UssdState.POST_DESTINATION: self._post_destination,
            UssdState.POST_CARGO_TYPE: self._post_cargo_type,
            UssdState.POST_WEIGHT: self._post_weight,
            UssdState.POST_PRICE: self._post_price,
            UssdState.POST_CONFIRM: self._post_confirm,
            UssdState.FIND_LOADS_LIST: self._find_loads_list,
            UssdState.FIND_LOAD_DETAIL: self._find_load_detail,
            UssdState.MY_SHIPMENTS: self._my_shipments,
            UssdState.SHIPMENT_DETAIL: self._shipment_detail,
            UssdState.ACCOUNT: self._account,
            UssdState.ACCOUNT_BALANCE: self._account_balance,
            UssdState.ACCOUNT_WITHDRAW: self._account_withdraw,
            UssdState.ERROR_RETRY: self._error_retry,
        }

    def process_input(self, session: UssdSession, text: str, now: Optional[datetime] = None) -> UssdStep:
        """Next state and context for one input. The session is not modified."""
        self.enforcer.assert_session_active(session, now=now)
        self.enforcer.assert_context_json(session.context)
        self.enforcer.assert_input(session.state, text)

        state = UssdState(session.state)
        context = copy.deepcopy(session.context)
        context.setdefault('history', [])

        if text == GLOBAL_MAIN_MENU:
            context['history'] = []
            return UssdStep(UssdState.MAIN_MENU, context, False)

        new_state, is_end = self._handlers[state](text, context)
        logger.debug(f"USSD {session.session_id}: {state.value} --{text!r}--> {new_state.value}")
        return UssdStep(new_state, context, is_end)

    def render(self, step: UssdStep, language: str = "en") -> str:
        response = render_menu(step.new_state, step.context, language, is_end=step.is_end)
        self.enforcer.assert_response_length(response)
        return response

    # --- helpers ---

    @staticmethod
    def _forward(context: Dict[str, Any], current: UssdState, target: UssdState) -> Tuple[UssdState, bool]:
        context['history'].append(current.value)
        return target, False

    @staticmethod
    def _back(context: Dict[str, Any], default: UssdState) -> Tuple[UssdState, bool]:
        history: List[str] = context['history']
        return (UssdState(history.pop()) if history else default), False

    # --- handlers, one per state ---

    def _main_menu(self, text, context):
        if text == "0":
            return UssdState.MAIN_MENU, True
        if text == "2":
            context['load_page'] = 1
        target = {
            "1": UssdState.POST_PICKUP,
            "2": UssdState.FIND_LOADS_LIST,
            "3": UssdState.MY_SHIPMENTS,
            "4": UssdState.ACCOUNT,
        }[text]
        return self._forward(context, UssdState.MAIN_MENU, target)

    def _post_pickup(self, text, context):
        if text == "0":
            return self._back(context, UssdState.MAIN_MENU)
        context['origin'] = text.strip()
        return self._forward(context, UssdState.POST_PICKUP, UssdState.POST_DESTINATION)

    def _post_destination(self, text, context):
        if text == "0":
            return self._back(context, UssdState.POST_PICKUP)
        context['destination'] = text.strip()
        return self._forward(context, UssdState.POST_DESTINATION, UssdState.POST_CARGO_TYPE)

    def _post_cargo_type(self, text, context):
        if text == "0":
            return self._back(context, UssdState.POST_DESTINATION)
        context['cargo_type'] = USSD_CARGO_TYPES[text].value
        return self._forward(context, UssdState.POST_CARGO_TYPE, UssdState.POST_WEIGHT)

    def _post_weight(self, text, context):
        if text == "0":
            return self._back(context, UssdState.POST_CARGO_TYPE)
        context['weight_kg'] = parse_positive_number(text)
        return self._forward(context, UssdState.POST_WEIGHT, UssdState.POST_PRICE)

    def _post_price(self, text, context):
        if text == "0":
            return self._back(context, UssdState.POST_WEIGHT)
        context['price_mwk'] = parse_positive_number(text)
        return self._forward(context, UssdState.POST_PRICE, UssdState.POST_CONFIRM)

    def _post_confirm(self, text, context):
        if text == "1":
            return UssdState.POST_CONFIRM, True
        context['history'] = []
        return UssdState.POST_PICKUP, False

    def _find_loads_list(self, text, context):
        if text == "0":
            return self._back(context, UssdState.MAIN_MENU)
        if text == "#":
            context['load_page'] = context.get('load_page', 1) + 1
            return UssdState.FIND_LOADS_LIST, False
        context['selected_load_id'] = f"load-{text}"
        return self._forward(context, UssdState.FIND_LOADS_LIST, UssdState.FIND_LOAD_DETAIL)

    def _find_load_detail(self, text, context):
        if text == "1":
            context['history'].append(UssdState.FIND_LOAD_DETAIL.value)
            return UssdState.FIND_LOAD_ACCEPT, True
        return self._back(context, UssdState.FIND_LOADS_LIST)

    def _my_shipments(self, text, context):
        if text == "0":
            return self._back(context, UssdState.MAIN_MENU)
        context['selected_shipment'] = int(text)
        return self._forward(context, UssdState.MY_SHIPMENTS, UssdState.SHIPMENT_DETAIL)

    def _shipment_detail(self, text, context):
        if text == "1":
            return UssdState.SHIPMENT_DETAIL, True
        return self._back(context, UssdState.MY_SHIPMENTS)

    def _account(self, text, context):
        if text == "0":
            return self._back(context, UssdState.MAIN_MENU)
        if text == "3":
            # history goes out by SMS
            return UssdState.ACCOUNT, True
        target = UssdState.ACCOUNT_BALANCE if text == "1" else UssdState.ACCOUNT_WITHDRAW
        return self._forward(context, UssdState.ACCOUNT, target)

    def _account_balance(self, text, context):
        if text == "0":
            return self._back(context, UssdState.ACCOUNT)
        return self._forward(context, UssdState.ACCOUNT_BALANCE, UssdState.ACCOUNT_WITHDRAW)

    def _account_withdraw(self, text, context):
        if text == "0":
            return self._back(context, UssdState.ACCOUNT_BALANCE)
        context['withdraw_provider'] = "airtel_money" if text == "1" else "tnm_mpamba"
        return UssdState.ACCOUNT_WITHDRAW, True

    def _error_retry(self, text, context):
        context['history'] = []
        return UssdState.MAIN_MENU, False

# ============================================
# SESSION STORE
# ============================================

class UssdSessionStore:
    """In-memory session store with idle timeout (production would use Redis)."""

    def __init__(self, ttl_seconds: int = 300):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._sessions: Dict[str, UssdSession] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str, now: Optional[datetime] = None) -> Optional[UssdSession]:
        now = now or datetime.now()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and now - session.updated_at > self.ttl:
                del self._sessions[session_id]
                logger.info(f"USSD session {session_id} expired")
                return None
            return session

    def create(self, session_id: str, phone: str, language: str = "en", now: Optional[datetime] = None) -> UssdSession:
        now = now or datetime.now()
        session = UssdSession(session_id=session_id, phone=phone, language=language,
                              created_at=now, updated_at=now)
        with self._lock:
            self._sessions[session_id] = session
        return session

    def advance(self, session: UssdSession, step: UssdStep, now: Optional[datetime] = None) -> UssdSession:
        """Store the session at its new state, or drop it if the step ended the dialogue."""
        updated = replace(session, state=step.new_state.value, context=step.context,
                          updated_at=now or datetime.now())
        with self._lock:
            if step.is_end:
                self._sessions.pop(session.session_id, None)
            else:
                self._sessions[session.session_id] = updated
        return updated

    def delete(self, session_id: str):
        with self._lock:
            self._sessions.pop(session_id, None)
