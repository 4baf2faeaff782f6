"""Basic unit tests for the consultline package."""

from consultline import (
    ConsultEngine,
    ConsultError,
    SessionError,
    InsufficientBalance,
    AdvisorUnavailable,
    AlreadyInSession,
    QueueFull,
    ChannelUnavailable,
    AdvisorBusy,
    RateLimited,
    LedgerUnavailable,
    AlreadyRated,
    C2SEvent,
    S2CEvent,
    SessionState,
    TerminationReason,
    __version__,
)
from consultline.lifecycle import ALLOWED_TRANSITIONS
from consultline.models.session import TERMINAL_STATES


def test_version():
    assert __version__ == "0.1.0"


def test_public_exports():
    assert ConsultEngine is not None


def test_error_hierarchy():
    for cls in (SessionError, InsufficientBalance, AdvisorUnavailable, AlreadyInSession, QueueFull,
                ChannelUnavailable, AdvisorBusy, RateLimited, LedgerUnavailable, AlreadyRated):
        assert issubclass(cls, ConsultError)


def test_error_attributes():
    err = ConsultError(code="test_code", message="something broke")
    assert err.code == "test_code"
    assert str(err) == "something broke"
    assert err.details is None

    err_with_details = SessionError("bad session", details={"id": "123"})
    assert err_with_details.code == "session_error"
    assert err_with_details.details == {"id": "123"}

    limited = RateLimited(15)
    assert limited.code == "rate_limited"
    assert limited.retry_after == 15


def test_event_constants():
    assert C2SEvent.JOIN_ROOM == "live:join-room"
    assert C2SEvent.SEND_MESSAGE == "live:send-message"
    assert S2CEvent.SESSION_END == "live:session-end"
    assert S2CEvent.PRESENCE == "live:presence"


def test_terminal_states_have_no_exits():
    for state in TERMINAL_STATES:
        assert state not in ALLOWED_TRANSITIONS


def test_cancel_and_fail_only_before_active():
    sources = {src for src, targets in ALLOWED_TRANSITIONS.items()
               if SessionState.CANCELLED in targets or SessionState.FAILED in targets}
    assert sources == {SessionState.REQUESTING, SessionState.QUEUED, SessionState.CONNECTING}


def test_termination_reasons_are_strings():
    assert TerminationReason.INACTIVITY.value == "inactivity"
    assert TerminationReason("peer_ended") is TerminationReason.PEER_ENDED
