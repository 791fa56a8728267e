from __future__ import annotations

import base64
import logging
import os
import re
import subprocess
import tempfile
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from nodeagent.src.tasks import CancellationToken

LOGGER = logging.getLogger(__name__)

RESTIC_BINARY = "restic"
_SNAPSHOT_SAVED = re.compile(r"snapshot ([0-9a-f]+) saved")


class ResticError(RuntimeError):
    """Raised when a data tool invocation fails or cannot be prepared."""


@dataclass(frozen=True)
class ResticCommand:
    command: str
    repo_identifier: str
    password_file: str
    args: tuple[str, ...] = ()
    extra_flags: tuple[str, ...] = ()

    def argv(self) -> list[str]:
        return [
            RESTIC_BINARY,
            self.command,
            f"--repo={self.repo_identifier}",
            f"--password-file={self.password_file}",
            *self.args,
            *self.extra_flags,
        ]

    def __str__(self) -> str:
        return " ".join(self.argv())


def backup_command(
    repo_identifier: str, password_file: str, path: str, tags: Mapping[str, str]
) -> ResticCommand:
    tag_flags = tuple(f"--tag={key}={value}" for key, value in sorted(tags.items()))
    return ResticCommand(
        command="backup",
        repo_identifier=repo_identifier,
        password_file=password_file,
        args=(path,),
        extra_flags=("--hostname=ark-restic", *tag_flags),
    )


def restore_command(
    repo_identifier: str, password_file: str, snapshot_id: str, target: str
) -> ResticCommand:
    return ResticCommand(
        command="restore",
        repo_identifier=repo_identifier,
        password_file=password_file,
        args=(snapshot_id,),
        extra_flags=(f"--target={target}",),
    )


def parse_snapshot_id(output: str) -> str:
    match = _SNAPSHOT_SAVED.search(output)
    if match is None:
        raise ResticError("unable to find snapshot ID in restic backup output")
    return match.group(1)


def repository_password(secret: Any, key: str) -> bytes:
    """Decode the repository password stored under *key* in a core ``V1Secret``."""
    data = getattr(secret, "data", None) or {}
    encoded = data.get(key)
    if not encoded:
        raise ResticError(f"credentials secret has no {key!r} entry")
    return base64.b64decode(encoded)


@contextmanager
def temp_password_file(password: bytes) -> Iterator[str]:
    """Write *password* to a private temporary file removed on exit."""
    fd, path = tempfile.mkstemp(prefix="ark-restic-credentials-")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(password)
        os.chmod(path, 0o600)
        yield path
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


def run_command(
    argv: Sequence[str],
    env: Mapping[str, str],
    token: CancellationToken,
    poll_interval: float = 1.0,
) -> str:
    """Run the data tool, terminating it if *token* is cancelled.

    Returns combined stdout; raises :class:`ResticError` with stderr on a
    non-zero exit or on cancellation.
    """
    LOGGER.debug("Running command: %s", " ".join(argv))
    with tempfile.TemporaryFile() as stdout, tempfile.TemporaryFile() as stderr:
        try:
            process = subprocess.Popen(  # noqa: S603
                list(argv), stdout=stdout, stderr=stderr, env=dict(env)
            )
        except OSError as exc:
            raise ResticError(f"unable to start {argv[0]}: {exc}") from exc

        while process.poll() is None:
            if token.wait(timeout=poll_interval):
                process.terminate()
                try:
                    process.wait(timeout=10)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
                raise ResticError(f"{argv[0]} {argv[1]} interrupted by shutdown")

        stdout.seek(0)
        stderr.seek(0)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")

    if process.returncode != 0:
        raise ResticError(
            f"{argv[0]} {argv[1]} exited with status {process.returncode}: {err.strip()}"
        )
    return out
