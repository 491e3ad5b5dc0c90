"""
Run lifecycle tracking.

A run is created ``running`` and finalized exactly once as ``completed`` or
``failed``. Signal and exit hooks guarantee that a run never stays
``running`` after its process is gone.
"""

from __future__ import annotations

import atexit
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from flask import current_app

from ..utils.error_handler import ProcessInterrupted


RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
INTERRUPTED_MESSAGE = "Process exited before run completed."
HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass
class RunState:
    run_id: Optional[int] = None
    finalized: bool = False
    handler_ran: bool = False
    interrupt_signal: Optional[int] = None
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def reset(self) -> None:
        self.run_id = None
        self.finalized = False
        self.handler_ran = False
        self.interrupt_signal = None
        self.total = 0
        self.succeeded = 0
        self.failed = 0
        self.metadata = {}


def decide_exit_status(state: RunState) -> Optional[tuple[str, str]]:
    """Final status for a run whose process is going away, or None when the
    run was already finalized (or never started)."""
    if state.run_id is None or state.finalized:
        return None
    return RUN_FAILED, INTERRUPTED_MESSAGE


def exit_code_for(status: Optional[str]) -> int:
    return 0 if status == RUN_COMPLETED else 1


class RunTracker:
    def __init__(self, store, state: Optional[RunState] = None, install_handlers: bool = True) -> None:
        self.store = store
        self.state = state or RunState()
        self.install_handlers = install_handlers
        self.status: Optional[str] = None
        self._previous_handlers: dict[int, Any] = {}
        self._atexit_registered = False
        self._app = None

    # -- lifecycle ----------------------------------------------------------

    def start(self, kind: str, metadata: Optional[dict[str, Any]] = None):
        if self.state.run_id is not None and not self.state.finalized:
            raise RuntimeError(f"run {self.state.run_id} is still in progress")
        self.state.reset()
        run = self.store.create_run(kind, metadata or {})
        self.state.run_id = run.id
        self.state.metadata = dict(metadata or {})
        self.status = RUN_RUNNING
        self._app = current_app._get_current_object()
        if self.install_handlers:
            self._install()
        return run

    def set_total(self, total: int) -> None:
        self.state.total = total
        self._write({"total_records": total})

    def record_item(self, succeeded: bool) -> None:
        if succeeded:
            self.state.succeeded += 1
            self._write({"completed_count": self.state.succeeded})
        else:
            self.state.failed += 1
            self._write({"failed_count": self.state.failed})

    def add_metadata(self, **values: Any) -> None:
        self.state.metadata.update(values)
        self._write({"metadata": dict(self.state.metadata)})

    def check_interrupted(self) -> None:
        if self.state.interrupt_signal is not None:
            raise ProcessInterrupted(self.state.interrupt_signal)

    def finalize(self, status: str, error_message: Optional[str] = None) -> bool:
        """Write the final status once. Returns False if already finalized."""
        if self.state.run_id is None or self.state.finalized:
            return False
        if status not in (RUN_COMPLETED, RUN_FAILED):
            raise ValueError(f"invalid final status: {status}")
        # Flag first so a signal arriving mid-write cannot finalize twice
        self.state.finalized = True
        self.status = status
        fields = {
            "status": status,
            "finished_at": datetime.utcnow(),
            "total_records": self.state.total,
            "completed_count": self.state.succeeded,
            "failed_count": self.state.failed,
        }
        if error_message:
            fields["error_message"] = error_message
        self._write(fields)
        self._restore()
        self._log("info", "run %s finalized as %s", self.state.run_id, status)
        return True

    # -- exit hooks ---------------------------------------------------------

    def handle_signal(self, signum: int, frame=None) -> None:
        """Cooperative cancellation: the first signal only flags the run so the
        in-flight step can settle; a second one finalizes immediately."""
        self.state.handler_ran = True
        if self.state.interrupt_signal is None:
            self.state.interrupt_signal = signum
            self._log("warning", "signal %s received; stopping run %s after current step", signum, self.state.run_id)
            return
        self._log("warning", "second signal %s received; failing run %s now", signum, self.state.run_id)
        self.on_exit()
        raise ProcessInterrupted(signum)

    def on_exit(self) -> None:
        decision = decide_exit_status(self.state)
        if decision is None:
            return
        status, message = decision
        if self._app is not None:
            with self._app.app_context():
                self.finalize(status, message)
        else:
            self.finalize(status, message)

    def reset(self) -> None:
        self._restore()
        self.state.reset()
        self.status = None

    # -- internals ----------------------------------------------------------

    def _write(self, fields: dict[str, Any]) -> None:
        if self.state.run_id is None:
            return
        self.store.update_run(self.state.run_id, fields)

    def _install(self) -> None:
        if not self._atexit_registered:
            atexit.register(self.on_exit)
            self._atexit_registered = True
        if threading.current_thread() is not threading.main_thread():
            self._log("debug", "not on main thread; signal handlers not installed")
            return
        for signum in HANDLED_SIGNALS:
            if signum not in self._previous_handlers:
                self._previous_handlers[signum] = signal.getsignal(signum)
                signal.signal(signum, self.handle_signal)

    def _restore(self) -> None:
        if self._atexit_registered:
            atexit.unregister(self.on_exit)
            self._atexit_registered = False
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers.clear()

    def _log(self, level: str, msg: str, *args: Any) -> None:
        logger = self._app.logger if self._app is not None else current_app.logger
        getattr(logger, level)(msg, *args)
