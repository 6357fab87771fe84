"""Subprocess execution service for axon-deploy."""

import subprocess
from typing import List, Optional

from axondeploy.errors import DeployError

# Remote output is carried byte for byte: no newline translation and
# undecodable bytes survive as surrogates.
ENCODING = "utf-8"
ENCODING_ERRORS = "surrogateescape"


def decode_output(data: Optional[bytes]) -> Optional[str]:
    if data is None:
        return None
    return data.decode(ENCODING, ENCODING_ERRORS)


def encode_input(text: Optional[str]) -> Optional[bytes]:
    if text is None:
        return None
    return text.encode(ENCODING, ENCODING_ERRORS)


class CommandRunner:
    """Runs local commands (ssh, mostly) with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout

        try:
            result = subprocess.run(
                cmd,
                input=encode_input(input),
                capture_output=capture_output,
                timeout=effective_timeout,
            )
        except FileNotFoundError as exc:
            raise DeployError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise DeployError(f"Command timed out after {effective_timeout}s: {cmd_str}") from exc
        except Exception as exc:
            raise DeployError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        result.stdout = decode_output(result.stdout)
        result.stderr = decode_output(result.stderr)

        if result.returncode == 0:
            return result

        stderr = (result.stderr or "").strip() if capture_output else ""
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr:
            message = f"{message}\n{stderr}"

        if check:
            raise DeployError(message)

        self.logger.debug(message)
        return result
