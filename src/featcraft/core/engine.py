"""
Invocation of the external FEAT engine on generated designs.
"""

import logging
import shlex
import shutil
import subprocess
from typing import List, Optional, Sequence, Union

from featcraft.core.models import GeneratedConfig

logger = logging.getLogger(__name__)


ON_ERROR_ABORT = "abort"
ON_ERROR_CONTINUE = "continue"
ON_ERROR_CHOICES = (ON_ERROR_ABORT, ON_ERROR_CONTINUE)


class EngineError(RuntimeError):
    """Raised when FEAT exits with a non-zero status under the abort policy."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class FeatRunner:
    """
    Run FEAT once per design file, sequentially.

    Parameters
    ----------
    command : str or list of str
        Engine command; the design path is appended as its only argument.
    on_error : str
        "abort" raises :class:`EngineError` on a non-zero exit status,
        "continue" logs the failure and lets the caller move on.
    """

    def __init__(
        self,
        command: Union[str, Sequence[str]] = "feat",
        on_error: str = ON_ERROR_ABORT,
    ):
        if on_error not in ON_ERROR_CHOICES:
            raise ValueError(f"on_error must be one of {ON_ERROR_CHOICES}, got {on_error!r}")
        self.command: List[str] = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError("Engine command is empty")
        self.on_error = on_error

    def is_available(self) -> bool:
        return shutil.which(self.command[0]) is not None

    def run(self, config: GeneratedConfig) -> int:
        """
        Run the engine on one design and return its exit status.

        Raises
        ------
        EngineError
            If the engine cannot be started, or exits non-zero with the
            abort policy.
        """
        cmd = self.command + [str(config.output_path)]
        logger.debug(f"Running: {' '.join(shlex.quote(c) for c in cmd)}")

        try:
            completed = subprocess.run(cmd, check=False)
        except OSError as e:
            raise EngineError(f"Could not start {self.command[0]}: {e}") from e

        returncode = completed.returncode
        if returncode != 0:
            message = f"{self.command[0]} exited with status {returncode} for {config.output_path}"
            if self.on_error == ON_ERROR_ABORT:
                logger.error(message)
                raise EngineError(message, returncode)
            logger.error(f"{message}; continuing with the remaining designs")

        return returncode
