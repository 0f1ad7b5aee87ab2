"""
Matola - Enforcement Layer Integration
Re-exports enforcement components for API usage
"""

# Core enforcement
from matola_enforcement_v1 import (
    Invariant,
    InvariantType,
    Criticality,
    InvariantEnforcer,
    EntityEnforcer,
    EnforcementReport,
    DecisionLedger,
    EnforcementDecision,
    EnforcementResult,

    # Exceptions
    MatolaError,
    ValidationError,
    OutOfRegion,
    InvariantViolation,
    Unauthorized,
    Forbidden,
    SignatureMismatch,
    SystemCompromised,

    # Logging
    logger
)

# Geo + webhook validators
from matola_geo_v1 import (
    is_region_coordinate,
    validate_shipment_coordinates,
    calculate_distance,
    ShipmentCoordinatesInRegion,
)
from matola_webhook_v1 import (
    SecretStore,
    SettingsSecretStore,
    StaticSecretStore,
    WebhookVerifier,
    generate_signature,
    verify_provider_webhook,
    webhook_idempotency_key,
    map_provider_status,
    WebhookSignatureVerified,
    WebhookNotReplayed,
)

# Entity enforcers
from matola_invariants_v1 import (
    UserInvariantEnforcer,
    ShipmentInvariantEnforcer,
    MatchInvariantEnforcer,
)
from matola_remaining_invariants_v1 import (
    PaymentInvariantEnforcer,
    RatingInvariantEnforcer,
)
from matola_ussd_v1 import (
    UssdInvariantEnforcer,
    UssdMenu,
    UssdSessionStore,
    UssdState,
    UssdStep,
    parse_ussd_text,
)

# Security
from matola_security_v1 import (
    RequestContext,
    TokenRegistry,
    require_authenticated,
    require_role,
    require_admin,
    require_resource_owner,
    require_payment_access,
    require_verified,
    sanitize_for_logging,
)

# Persistence (in production, these would be real implementations)
from matola_persistence_v1 import MatolaRepository, InMemoryRepository

__all__ = [
    # Core classes
    'Invariant',
    'InvariantType',
    'Criticality',
    'InvariantEnforcer',
    'EntityEnforcer',
    'EnforcementReport',
    'DecisionLedger',
    'EnforcementDecision',
    'EnforcementResult',

    # Exceptions
    'MatolaError',
    'ValidationError',
    'OutOfRegion',
    'InvariantViolation',
    'Unauthorized',
    'Forbidden',
    'SignatureMismatch',
    'SystemCompromised',

    # Validators
    'is_region_coordinate',
    'validate_shipment_coordinates',
    'calculate_distance',
    'ShipmentCoordinatesInRegion',
    'SecretStore',
    'SettingsSecretStore',
    'StaticSecretStore',
    'WebhookVerifier',
    'generate_signature',
    'verify_provider_webhook',
    'webhook_idempotency_key',
    'map_provider_status',
    'WebhookSignatureVerified',
    'WebhookNotReplayed',

    # Enforcers
    'UserInvariantEnforcer',
    'ShipmentInvariantEnforcer',
    'MatchInvariantEnforcer',
    'PaymentInvariantEnforcer',
    'RatingInvariantEnforcer',
    'UssdInvariantEnforcer',
    'UssdMenu',
    'UssdSessionStore',
    'UssdState',
    'UssdStep',
    'parse_ussd_text',

    # Security
    'RequestContext',
    'TokenRegistry',
    'require_authenticated',
    'require_role',
    'require_admin',
    'require_resource_owner',
    'require_payment_access',
    'require_verified',
    'sanitize_for_logging',

    # Persistence
    'MatolaRepository',
    'InMemoryRepository',

    # Logging
    'logger'
]
