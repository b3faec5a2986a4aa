"""
build.py: run a watch rule's command for one changed file.

The command runs under the user's shell with the changed path in ``$FILE``.
Its stdout (and stderr, unless the rule is silent) is mirrored live to our
own stderr; stderr is also buffered so it can be shown in the browser.
"""

import asyncio
import logging
import os
import signal
import sys

from .protocol import Failure, Update


logger = logging.getLogger(__name__)

MAX_STDERR_BYTES = 1024 * 1024
READ_CHUNK = 4096
FILE_ENV_VAR = "FILE"


def default_shell():
    return os.environ.get("SHELL") or "/bin/sh"


def _mirror(chunk):
    out = getattr(sys.stderr, "buffer", None)
    if out is not None:
        out.write(chunk)
        out.flush()
    else:
        sys.stderr.write(chunk.decode("utf-8", errors="replace"))
        sys.stderr.flush()


async def _pump(stream, mirror, buffer=None, limit=0):
    """Drain ``stream``; mirror each chunk and keep up to ``limit`` bytes."""
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            return
        if mirror:
            _mirror(chunk)
        if buffer is not None and len(buffer) < limit:
            buffer += chunk[:limit - len(buffer)]


def _kill_group(proc):
    """Kill the shell and everything it started."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_build(rule, path, stderr_fails=True, shell=None):
    """Run ``rule.command`` for ``path`` and return the result to broadcast.

    Returns ``Update(path)`` on success, ``Failure(text)`` on failure, or
    ``None`` for a silent rule, which never notifies browsers. A command
    that cannot be spawned is always reported, silent or not. With
    ``stderr_fails`` a zero exit that wrote to stderr still counts as a
    failure.
    """
    if not rule.command:
        return None if rule.silent else Update(path)

    shell = shell or default_shell()
    env = dict(os.environ)
    env[FILE_ENV_VAR] = path

    logger.debug("Running %r for %s", rule.command, path)
    try:
        proc = await asyncio.create_subprocess_exec(
            shell, "-c", rule.command,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        logger.error("Cannot run %r: %s", rule.command, e)
        return Failure(f"Cannot run {rule.command!r} with {shell}: {e}")

    stderr = bytearray()
    try:
        await asyncio.gather(
            _pump(proc.stdout, mirror=True),
            _pump(proc.stderr, mirror=not rule.silent, buffer=stderr,
                  limit=MAX_STDERR_BYTES),
        )
        code = await proc.wait()
    except asyncio.CancelledError:
        if proc.returncode is None:
            logger.debug("Killing %r for %s", rule.command, path)
            _kill_group(proc)
            await proc.wait()
        raise

    if rule.silent:
        logger.debug("Silent rule %r finished with status %s", rule.pattern, code)
        return None
    if code == 0 and not (stderr_fails and stderr):
        return Update(path)

    message = stderr.decode("utf-8", errors="replace")
    if not message:
        message = f"{rule.command} exited with status {code}"
    return Failure(message)
