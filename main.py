#!/usr/bin/env python3
"""
Development launcher for the tab recorder backend.

- Runs the ingest server in the foreground using config defaults
- Ctrl-C exits cleanly (active recordings are closed first)
- Ctrl-R restarts the server with a freshly loaded configuration
"""

import os
import signal
import sys
import termios
import threading
import tty

from tab_recorder.config import reload_cfg
from tab_recorder.web_server import _resolve_web_server_runtime, start_web_server_in_thread


class KeyWatcher(threading.Thread):
    def __init__(self):
        super().__init__(daemon=True)
        self.fd = sys.stdin.fileno()
        self.old_settings = termios.tcgetattr(self.fd)
        tty.setcbreak(self.fd)
        self.restart_requested = threading.Event()
        self.exit_requested = threading.Event()

    def run(self):
        try:
            while not self.exit_requested.is_set():
                ch = os.read(self.fd, 1)
                if not ch:
                    continue
                if ch == b"\x03":  # Ctrl-C
                    self.exit_requested.set()
                elif ch == b"\x12":  # Ctrl-R
                    self.restart_requested.set()
        finally:
            self.restore()

    def restore(self):
        termios.tcsetattr(self.fd, termios.TCSADRAIN, self.old_settings)

    def wait(self) -> bool:
        """Block until a key is pressed. Returns True when a restart was requested."""
        while not (self.exit_requested.is_set() or self.restart_requested.is_set()):
            self.exit_requested.wait(0.2)
        return self.restart_requested.is_set() and not self.exit_requested.is_set()


def _start_dev_server():
    host, port = _resolve_web_server_runtime(reload_cfg())
    return start_web_server_in_thread(host=host, port=port, access_log=True, log_level="DEBUG")


def main():
    print("[dev] Running tab recorder backend (Ctrl-C to exit, Ctrl-R to restart)")
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    watcher = KeyWatcher()
    watcher.start()
    try:
        while True:
            server = _start_dev_server()
            try:
                restart = watcher.wait()
            except KeyboardInterrupt:
                restart = False
            finally:
                # Stop the server before touching the terminal again
                print("[dev] Stopping web_server ...")
                server.stop()

            if restart:
                print("[dev] Restart requested via Ctrl-R")
                watcher.restart_requested.clear()
                continue
            print("[dev] Exiting dev mode")
            return 0
    finally:
        watcher.restore()


if __name__ == "__main__":
    sys.exit(main())
