"""
Pipeline Error Taxonomy

Every failure surfaced by the pipeline derives from PipelineError and falls
into one of four families:

- TransientError: network/IO hiccups, retried with backoff
- ConfigurationError: missing credentials, bad keys, unloadable lookups;
  fatal at startup
- CorruptionError: payload integrity failures; fatal for one file, never
  retried
- Unit-of-work errors (ExtractionFailedError, PublishFailedError,
  DeliveryError) that wrap an exhausted retry with enough context to re-run
  exactly that unit

Validation failures are not exceptions; they are routed to the dead-letter
file by the transformer.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class TransientError(PipelineError):
    """Retryable I/O failure (timeouts, connection resets, 5xx responses)."""


class ConfigurationError(PipelineError):
    """Invalid or missing configuration; the affected component must not run."""


class CorruptionError(PipelineError):
    """Payload failed an integrity check; retrying will not help."""


class DecryptionError(CorruptionError):
    """Authenticated decryption failed (wrong key or tampered payload)."""


class ExtractionBusyError(PipelineError):
    """An extraction run is already active in this or another process."""


class ExtractionFailedError(PipelineError):
    """Extraction gave up on a page after exhausting its retries."""

    def __init__(self, offset: int, cause: BaseException | None = None) -> None:
        self.offset = offset
        self.cause = cause
        super().__init__(f"Extraction failed at offset={offset}: {cause}")


class PublishFailedError(PipelineError):
    """Manifest could not be published for a batch."""

    def __init__(self, raw_file_path: str, cause: BaseException | None = None) -> None:
        self.raw_file_path = raw_file_path
        self.cause = cause
        super().__init__(f"Manifest publish failed for batch={raw_file_path}: {cause}")


class DeliveryError(PipelineError):
    """A single file could not be delivered."""

    def __init__(self, file_path: str, cause: BaseException | None = None) -> None:
        self.file_path = file_path
        self.cause = cause
        super().__init__(f"Delivery failed for file={file_path}: {cause}")
