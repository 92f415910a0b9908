"""Exception taxonomy for the droid bridge.

Transport faults, session lookup failures and capture failures are raised
as subclasses of :class:`BridgeError`. The ACP surface converts them into
``acp.RequestError`` before they reach the editor.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


# =============================================================================
# Transport
# =============================================================================


class TransportError(BridgeError):
    """The droid subprocess could not be driven."""


class DroidSpawnError(TransportError):
    """The droid executable could not be started."""


class DroidInitError(TransportError):
    """The droid rejected ``droid.initialize_session`` or exited during it."""


class DroidInitTimeoutError(DroidInitError):
    """No initialization response arrived in time."""


# =============================================================================
# Sessions
# =============================================================================


class SessionNotFoundError(BridgeError):
    """No session is registered under the given id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class TurnInProgressError(BridgeError):
    """A prompt arrived while another prompt of the same session is running."""

    def __init__(self, message: str = "Another prompt is already in progress") -> None:
        super().__init__(message)


class ExperimentalFeatureDisabledError(BridgeError):
    """Session load/list/resume was requested without the experiment flag."""

    def __init__(self, action: str) -> None:
        super().__init__(
            f"Session {action} is experimental. Start droid-acp with "
            "--experiment-sessions (or set DROID_ACP_EXPERIMENT_SESSIONS=1)."
        )
        self.action = action


# =============================================================================
# Capture
# =============================================================================


class CaptureError(BridgeError):
    """A capture of the next assistant reply failed."""


class CaptureCancelledError(CaptureError):
    """The capture was cancelled by the user."""


class CaptureTimeoutError(CaptureError):
    """The capture did not finish in time."""
