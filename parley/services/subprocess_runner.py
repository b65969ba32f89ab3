"""
Bounded execution of external audio tools (ffmpeg, piper).

Every run has a timeout; on timeout or cancellation of the awaiting task the
child process is killed so no audio job outlives its turn.
"""

import asyncio
from typing import Optional, Sequence

from parley.core.logging import get_logger
from parley.core.voice_errors import TIMEOUT_001, VoiceError, VoiceErrorCode

logger = get_logger(__name__)


def kill_process(proc: asyncio.subprocess.Process) -> None:
    """SIGKILL ``proc`` if it is still running."""
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass


async def run_process(
    args: Sequence[str],
    *,
    timeout: float,
    error_code: VoiceErrorCode,
    provider: str,
    input_data: Optional[bytes] = None,
) -> bytes:
    """
    Run ``args`` to completion and return its stdout.

    Raises:
        VoiceError: ``error_code`` when the binary is missing or exits non-zero,
            TIMEOUT_001 when ``timeout`` elapses
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise VoiceError(error_code, message=f"{args[0]} is not installed", provider=provider) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(input_data), timeout=timeout)
    except asyncio.TimeoutError as e:
        kill_process(proc)
        await proc.wait()
        raise VoiceError(
            TIMEOUT_001,
            message=f"{provider} timed out after {timeout:g}s",
            provider=provider,
        ) from e
    except asyncio.CancelledError:
        kill_process(proc)
        raise

    if proc.returncode != 0:
        detail = stderr.decode(errors="replace").strip()[-300:]
        raise VoiceError(
            error_code,
            message=f"{provider} exited with code {proc.returncode}",
            provider=provider,
            stderr=detail,
        )

    logger.debug("subprocess_completed", provider=provider, stdout_bytes=len(stdout))
    return stdout
