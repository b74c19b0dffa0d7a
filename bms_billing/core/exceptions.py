class BillingError(Exception):
    """Base class for typed billing failures surfaced to callers"""
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class ValidationError(BillingError):
    status_code = 400
    code = "validation_error"


class CrossOrganizationError(BillingError):
    status_code = 403
    code = "cross_organization"


class DuplicateReferenceError(BillingError):
    status_code = 409
    code = "duplicate_reference"


class InvalidStateError(BillingError):
    status_code = 409
    code = "invalid_state"


class ProviderVerificationError(BillingError):
    status_code = 502
    code = "provider_verification_failed"


class SignatureVerificationError(ProviderVerificationError):
    status_code = 401
    code = "invalid_signature"


class ProviderConfigurationError(BillingError):
    status_code = 500
    code = "provider_configuration_error"
