class DojoError(Exception):
    """Base error for dojo operations."""


class NotFoundError(DojoError):
    pass


class ValidationError(DojoError):
    def __init__(self, message, field_errors=None):
        super().__init__(message)
        self.field_errors = field_errors or {}


class WaiverRequiredError(DojoError):
    def __init__(self, message, missing_waivers=None):
        super().__init__(message)
        self.missing_waivers = missing_waivers or []


class AlreadyRegisteredError(DojoError):
    def __init__(self, message, student_ids=None):
        super().__init__(message)
        self.student_ids = student_ids or []


class PaymentError(DojoError):
    pass


class ProviderNotConfiguredError(PaymentError):
    pass


class WebhookSignatureError(PaymentError):
    pass


class DuplicateEventError(DojoError):
    pass
