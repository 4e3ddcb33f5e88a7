"""Error taxonomy for the audit pipeline."""


class AuditError(Exception):
    """Base class for pipeline errors."""


class NonRetriableError(AuditError):
    """Aborts a run immediately; never retried."""


class ConfigurationError(NonRetriableError):
    """Required configuration (e.g. oracle credentials) is missing."""

    def __init__(self, message: str):
        super().__init__(f"Configuration error: {message}")


class NotFoundError(NonRetriableError):
    """A referenced resource does not exist."""

    def __init__(self, resource: str, identifier: str | None = None):
        self.resource = resource
        self.identifier = identifier
        if identifier:
            super().__init__(f"{resource} with ID '{identifier}' not found")
        else:
            super().__init__(f"{resource} not found")


class CaseNotFoundError(NotFoundError):
    def __init__(self, case_ref: str):
        super().__init__("Case", case_ref)


class RubricNotFoundError(NotFoundError):
    def __init__(self, rubric_ref: str):
        super().__init__("Rubric", rubric_ref)


class OracleError(AuditError):
    """Transient failure of the reasoning oracle; retried with backoff."""


class OracleResponseError(OracleError):
    """Oracle answered, but the payload failed schema validation."""


class InvalidAuditStateError(AuditError):
    """An audit is not in the state the requested transition needs."""

    def __init__(self, audit_id: str, status: str, expected: str):
        self.audit_id = audit_id
        self.status = status
        super().__init__(f"Audit {audit_id} is '{status}', expected '{expected}'")


class TimelineChangedError(AuditError):
    """The rebuilt timeline no longer matches the one an audit was scored on."""

    def __init__(self, audit_id: str):
        self.audit_id = audit_id
        super().__init__(f"Transcripts of audit {audit_id} changed since it ran; start a new audit instead")
