"""
Process supervision for job runs.

Turns a command string and a working directory into a running, observable,
killable OS process. Output is decoded and handed to callbacks as it arrives;
process exit is observed on a background thread so callers never block on a
child.
"""

import codecs
import logging
import os
import signal
import subprocess
import threading
from typing import Callable, Dict, List, Optional, Tuple

from scheduler.errors import SpawnError

logger = logging.getLogger(__name__)

# Hints for CLI tools that only colorize when attached to a terminal
JOB_ENV_OVERRIDES = {
    'FORCE_COLOR': '1',
    'TERM': 'xterm-256color',
}

READ_CHUNK_SIZE = 4096


# One token as (text, quote_char) segments; quote_char is None outside quotes
Segments = List[Tuple[str, Optional[str]]]


def _split_segments(command: str) -> List[Segments]:
    tokens = []
    segments: Segments = []
    current = []
    quote_char = None

    def close_segment(quote):
        segments.append((''.join(current), quote))
        current.clear()

    def close_token():
        if any(text for text, _ in segments):
            tokens.append(list(segments))
        segments.clear()

    for char in command:
        if quote_char is None and char in ('"', "'"):
            if current:
                close_segment(None)
            quote_char = char
        elif char == quote_char:
            close_segment(quote_char)
            quote_char = None
        elif quote_char is None and char.isspace():
            if current:
                close_segment(None)
            close_token()
        else:
            current.append(char)

    if current or quote_char is not None:
        close_segment(quote_char)
    close_token()

    return tokens


def parse_command(command: str) -> List[str]:
    """
    Split a command string into tokens, respecting quotes.

    Single and double quotes group characters into one token and are removed.
    They are not escapes: there is no nesting and no backslash handling, and
    an unterminated quote runs to the end of the string. Empty tokens are
    dropped, so '' and "" disappear entirely.
    """
    return [''.join(text for text, _ in token) for token in _split_segments(command)]


def _render_segment(text: str, quote: Optional[str]) -> str:
    if quote == "'":
        return f"'{text}'"
    if quote == '"':
        # Backslashes stay literal, as they are for the tokenizer
        return '"' + text.replace('\\', '\\\\') + '"'
    return text


def build_shell_line(command: str) -> str:
    """
    Rebuild a command string as the line handed to the shell.

    Quoted groups keep their quotes, so metacharacters inside them ("a|b",
    "it's") stay literal while unquoted pipes and redirections still reach
    the shell. Double-quoted groups still expand $VARS. Whitespace between
    tokens is normalized, empty tokens are dropped and an unterminated quote
    is closed.
    """
    return ' '.join(
        ''.join(_render_segment(text, quote) for text, quote in token)
        for token in _split_segments(command)
    )


class ProcessHandle:
    """Handle to a running job process and its process group"""

    def __init__(self, process: subprocess.Popen, command_line: str):
        self.process = process
        self.command_line = command_line
        # The shell leads a new session, so its pid is also the group id
        self.pgid = process.pid

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def is_running(self) -> bool:
        """
        True while the shell or anything it started is still alive.

        A backgrounded child can outlive the shell and keep the output pipes
        open, so the process group is checked once the shell has exited.
        """
        if self.process.poll() is None:
            return True
        if not hasattr(os, 'killpg'):
            return False
        try:
            os.killpg(self.pgid, 0)
        except ProcessLookupError:
            return False
        return True

    def terminate(self) -> bool:
        """Send SIGTERM. Returns False if nothing in the group was alive."""
        return self._send_signal(signal.SIGTERM)

    def kill(self) -> bool:
        """Send SIGKILL. Returns False if nothing in the group was alive."""
        return self._send_signal(getattr(signal, 'SIGKILL', signal.SIGTERM))

    def _send_signal(self, sig) -> bool:
        if not self.is_running():
            return False
        try:
            if hasattr(os, 'killpg'):
                os.killpg(self.pgid, sig)
            else:
                self.process.send_signal(sig)
        except ProcessLookupError:
            return False
        logger.debug(f"Sent {signal.Signals(sig).name} to process group {self.pgid}")
        return True


class ProcessSupervisor:
    """
    Spawns job commands through the shell and streams their output.

    The supervisor only delivers signals; escalation timing belongs to the
    caller.
    """

    def __init__(self, env_overrides: Optional[Dict[str, str]] = None):
        """
        Initialize the supervisor.

        Args:
            env_overrides: Extra environment variables for every job process
        """
        self.env_overrides = dict(JOB_ENV_OVERRIDES)
        if env_overrides:
            self.env_overrides.update(env_overrides)

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.env_overrides)
        return env

    def spawn(
        self,
        command: str,
        cwd: str,
        on_stdout: Callable[[str], None],
        on_stderr: Callable[[str], None],
        on_exit: Callable[[Optional[int], Optional[str]], None],
        log_prefix: str = ""
    ) -> ProcessHandle:
        """
        Launch a command in a working directory.

        Args:
            command: Command string (tokenized, then run through the shell)
            cwd: Working directory for the process
            on_stdout: Called with each decoded stdout chunk
            on_stderr: Called with each decoded stderr chunk
            on_exit: Called once with (exit_code, signal_name) after all output
                has been delivered. exit_code is None if a signal killed it.
            log_prefix: Prefix for log lines

        Returns:
            Handle to the running process

        Raises:
            SpawnError: If the command is empty or the process cannot start
        """
        tokens = parse_command(command)
        if not tokens:
            raise SpawnError("Command is empty")
        command_line = build_shell_line(command)

        logger.info(f"{log_prefix}Executing command: {command_line} (cwd: {cwd})")

        try:
            process = subprocess.Popen(
                command_line,
                shell=True,
                cwd=cwd,
                env=self.build_env(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True
            )
        except OSError as e:
            logger.error(f"{log_prefix}Failed to spawn command: {e}")
            raise SpawnError(f"Failed to spawn '{command_line}' in {cwd}: {e}") from e

        stdout_thread = threading.Thread(
            target=self._read_stream,
            args=(process.stdout, on_stdout),
            name=f"job-stdout-{process.pid}",
            daemon=True
        )
        stderr_thread = threading.Thread(
            target=self._read_stream,
            args=(process.stderr, on_stderr),
            name=f"job-stderr-{process.pid}",
            daemon=True
        )
        stdout_thread.start()
        stderr_thread.start()

        waiter = threading.Thread(
            target=self._wait,
            args=(process, [stdout_thread, stderr_thread], on_exit, log_prefix),
            name=f"job-wait-{process.pid}",
            daemon=True
        )
        waiter.start()

        return ProcessHandle(process, command_line)

    @staticmethod
    def _read_stream(stream, callback: Callable[[str], None]):
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        try:
            for chunk in iter(lambda: stream.read1(READ_CHUNK_SIZE), b''):
                text = decoder.decode(chunk)
                if text:
                    callback(text)
            tail = decoder.decode(b'', final=True)
            if tail:
                callback(tail)
        except Exception:
            logger.exception("Error while reading process output")
        finally:
            stream.close()

    @staticmethod
    def _wait(process: subprocess.Popen, readers: List[threading.Thread],
              on_exit: Callable[[Optional[int], Optional[str]], None], log_prefix: str):
        returncode = process.wait()
        for reader in readers:
            reader.join()

        if returncode < 0:
            exit_code = None
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = str(-returncode)
            logger.info(f"{log_prefix}Process {process.pid} killed by {signal_name}")
        else:
            exit_code = returncode
            signal_name = None
            logger.info(f"{log_prefix}Process {process.pid} exited with code {exit_code}")

        try:
            on_exit(exit_code, signal_name)
        except Exception:
            logger.exception(f"{log_prefix}Exit handler failed")
