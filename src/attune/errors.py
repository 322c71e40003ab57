"""Custom exceptions for the Attune pipeline."""


class AttuneError(Exception):
    """Base exception for all Attune errors."""

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(AttuneError):
    """Raised when required configuration is missing or invalid."""


class NotFoundError(AttuneError):
    """Raised when a requested record does not exist."""

    def __init__(self, entity_type: str, identifier: object) -> None:
        super().__init__(
            f"{entity_type} not found: {identifier}",
            details={"entity_type": entity_type, "identifier": str(identifier)},
        )


class InvalidTransitionError(AttuneError):
    """Raised when a state machine rejects a transition.

    Covers double claims, re-review of a finalized suggestion and any
    write against a terminal record.
    """

    def __init__(self, entity: str, current: object, target: object) -> None:
        super().__init__(
            f"Invalid {entity} transition: {current} -> {target}",
            details={"entity": entity, "current": str(current), "target": str(target)},
        )
        self.entity = entity
        self.current = current
        self.target = target


class ConnectionBusyError(AttuneError):
    """Raised when a connection lease is already held by someone else."""

    def __init__(self, connection_id: object, holder: str | None = None) -> None:
        super().__init__(
            f"Connection busy: {connection_id}",
            details={"connection_id": str(connection_id), "holder": holder},
        )
        self.connection_id = connection_id
        self.holder = holder


class CapabilityError(AttuneError):
    """Raised when the classification or embedding capability fails."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(
            f"{operation} failed: {message}",
            details={"operation": operation},
        )
        self.operation = operation


class CapabilityTimeoutError(CapabilityError):
    """Raised when a capability call exceeds its timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(operation, f"timed out after {timeout:g}s")
        self.timeout = timeout


class FetchError(AttuneError):
    """Raised when a single URL cannot be fetched."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Fetch failed for {url}: {reason}", details={"url": url})
        self.url = url
        self.reason = reason


class DocumentParseError(AttuneError):
    """Raised when an uploaded document cannot be read."""

    def __init__(self, filename: str, reason: str) -> None:
        super().__init__(
            f"Cannot read {filename}: {reason}",
            details={"filename": filename},
        )
        self.filename = filename
        self.reason = reason


class ExtractionSourceError(AttuneError):
    """Raised when an extraction no longer points at usable source content."""

    def __init__(self, extraction_id: object, reason: str) -> None:
        super().__init__(reason, details={"extraction_id": str(extraction_id)})
        self.extraction_id = extraction_id
        self.reason = reason


class InsufficientContentError(AttuneError):
    """Raised when there is too little fetched text to analyze a brand."""

    def __init__(self, connection_id: object, found: int, required: int) -> None:
        super().__init__(
            f"Insufficient content for brand detection: {found} chars, need {required}",
            details={"connection_id": str(connection_id), "found": found, "required": required},
        )
        self.connection_id = connection_id
        self.found = found
        self.required = required
