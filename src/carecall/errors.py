class CareCallError(Exception):
    """Base class for errors raised by carecall."""


class FlowMapError(CareCallError, ValueError):
    """A flow map is structurally invalid (duplicate ids, dangling next references...)."""


class SessionBootstrapError(CareCallError):
    """The backend refused or failed to issue an ephemeral realtime credential."""


class MicrophoneError(CareCallError):
    """The microphone could not be acquired."""


class TransportError(CareCallError):
    """The realtime channel could not be negotiated or dropped during setup."""


class ScriptGenerationError(CareCallError):
    """Script generation failed or produced output that is not a usable flow."""
