from enum import Enum

ACTIVE_STATUSES = {
    "connecting", "connected", "listening",
    "user_speaking", "assistant_speaking", "processing",
}
TERMINAL_STATUSES = {"ended", "error"}


class CallStatus(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LISTENING = "listening"
    USER_SPEAKING = "user_speaking"
    ASSISTANT_SPEAKING = "assistant_speaking"
    PROCESSING = "processing"
    ENDED = "ended"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self.value in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_STATUSES


TRANSITIONS = {
    CallStatus.IDLE: {CallStatus.CONNECTING},
    CallStatus.CONNECTING: {CallStatus.CONNECTED, CallStatus.ERROR, CallStatus.ENDED},
    CallStatus.CONNECTED: {
        CallStatus.LISTENING, CallStatus.USER_SPEAKING, CallStatus.PROCESSING,
        CallStatus.ASSISTANT_SPEAKING, CallStatus.ENDED, CallStatus.ERROR,
    },
    CallStatus.LISTENING: {
        CallStatus.USER_SPEAKING, CallStatus.PROCESSING, CallStatus.ASSISTANT_SPEAKING,
        CallStatus.CONNECTED, CallStatus.ENDED, CallStatus.ERROR,
    },
    CallStatus.USER_SPEAKING: {
        CallStatus.PROCESSING, CallStatus.ASSISTANT_SPEAKING,
        CallStatus.ENDED, CallStatus.ERROR,
    },
    CallStatus.PROCESSING: {
        CallStatus.USER_SPEAKING, CallStatus.ASSISTANT_SPEAKING, CallStatus.CONNECTED,
        CallStatus.ENDED, CallStatus.ERROR,
    },
    CallStatus.ASSISTANT_SPEAKING: {
        CallStatus.CONNECTED, CallStatus.USER_SPEAKING, CallStatus.PROCESSING,
        CallStatus.ENDED, CallStatus.ERROR,
    },
    # A finished call only leaves its terminal status when the next call starts.
    CallStatus.ENDED: {CallStatus.CONNECTING},
    CallStatus.ERROR: {CallStatus.CONNECTING},
}


def is_valid_transition(current: CallStatus, new: CallStatus) -> bool:
    return new in TRANSITIONS.get(current, set())
