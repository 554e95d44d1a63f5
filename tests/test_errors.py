from __future__ import annotations

from repl_host.core.errors import (
    AlreadyStartingError,
    MissingBundleError,
    RuntimeNotFoundError,
    StartupCancelledError,
    StartupFailedError,
    error_payload_for,
)


def test_startup_failed_appends_stderr() -> None:
    exc = StartupFailedError("REPL process exited with code 1 before announcing a port", stderr="boom\n")
    assert str(exc) == "REPL process exited with code 1 before announcing a port. Error output: boom"
    assert exc.stderr == "boom\n"


def test_startup_failed_without_stderr_keeps_message() -> None:
    assert str(StartupFailedError("REPL startup timed out after 30 seconds", stderr="  ")) == (
        "REPL startup timed out after 30 seconds"
    )


def test_cancellation_errors_are_flagged_cancelled() -> None:
    for exc in (AlreadyStartingError("busy"), StartupCancelledError("REPL startup cancelled")):
        payload = error_payload_for(exc)
        assert payload.cancelled is True
        assert payload.instructions == "REPL startup was cancelled or already in progress."


def test_environment_errors_carry_instructions() -> None:
    assert "repl-host bundle" in (error_payload_for(MissingBundleError("no lib")).instructions or "")
    assert "java" in (error_payload_for(RuntimeNotFoundError("no java")).instructions or "")


def test_explicit_instructions_override_default() -> None:
    payload = MissingBundleError("no lib", instructions="copy the jars").to_payload()
    assert payload.error == "no lib"
    assert payload.instructions == "copy the jars"


def test_unknown_exception_maps_to_startup_failure() -> None:
    payload = error_payload_for(OSError("spawn failed"))
    assert payload.error == "spawn failed"
    assert payload.cancelled is False
    assert payload.instructions == StartupFailedError.default_instructions
    assert error_payload_for(RuntimeError()).error == "RuntimeError"
