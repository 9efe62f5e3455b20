from __future__ import annotations


class AicoderError(RuntimeError):
    pass


class ConfigError(AicoderError):
    """Missing or invalid configuration at startup. Fatal, never retried."""


class TransportError(AicoderError):
    """Network failure or non-success status from the model endpoint."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(AicoderError):
    """Model output could not be turned into a GeneratedFile.

    Only raised by the strict parser; the public parser degrades instead.
    """

    MISSING_FIELD = "missing_field"
    DECODE = "decode"

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason


class SandboxBootError(AicoderError):
    """The sandbox engine failed to initialize."""


class InstallError(AicoderError):
    def __init__(self, exit_code: int) -> None:
        super().__init__(f"dependency install exited with code {exit_code}")
        self.exit_code = exit_code


class WriteError(AicoderError):
    """A single sandbox filesystem mutation failed."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"write failed for '{path}': {detail}")
        self.path = path
        self.detail = detail
