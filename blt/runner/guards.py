"""Start-up guards - precondition checks that fail fast before serving.

Guards run before the HTTP server accepts requests. If one fails, the CLI
exits immediately with a clear error message and exit code instead of
accepting requests that could never complete.
"""

from __future__ import annotations

from pathlib import Path

from blt.archive import ArchiveClient, ArchiveConfigurationError, ArchiveError, TransientJobError
from blt.config import ServiceConfig
from blt.utils.logging import get_logger
from blt.utils.result import Err, ExitCode, GuardError, Ok, Result

logger = get_logger("runner.guards")


class StartupGuards:
    """
    Precondition checks for the transfer service.

    Each guard returns Ok(None) if the check passes and Err(GuardError)
    otherwise.
    """

    def __init__(self, config: ServiceConfig, client: ArchiveClient) -> None:
        self.config = config
        self.client = client

    async def check_all(self) -> Result[None, GuardError]:
        """
        Run all precondition checks.

        Returns:
            Result indicating success or first failure
        """
        logger.info("running_guards")

        if self.config.registry.state_file:
            result = self.check_state_file_writable(self.config.registry.state_file)
            if result.is_err():
                return result

        result = await self.check_archive()
        if result.is_err():
            return result

        logger.info("guards_passed")
        return Ok(None)

    async def check_archive(self) -> Result[None, GuardError]:
        """Check the archive answers and has a source modality and a peer."""
        try:
            info = await self.client.ping()
        except TransientJobError as e:
            return self._fail("archive", GuardError(
                code=ExitCode.SERVICE_UNREACHABLE,
                message=f"Cannot reach the archive at {self.config.archive.url}",
                details=str(e),
            ))
        except ArchiveConfigurationError as e:
            return self._fail("archive", GuardError(
                code=ExitCode.ARCHIVE_UNCONFIGURED,
                message="The archive is missing pipeline configuration",
                details=str(e),
            ))
        except ArchiveError as e:
            return self._fail("archive", GuardError(
                code=ExitCode.SERVICE_UNREACHABLE,
                message="The archive refused the status check",
                details=str(e),
            ))

        logger.debug("guard_passed", guard="archive", **info)
        return Ok(None)

    def check_state_file_writable(self, path: Path) -> Result[None, GuardError]:
        """Check that the registry state file can be written."""
        path = Path(path)
        directory = path.parent

        try:
            directory.mkdir(parents=True, exist_ok=True)
            test_file = directory / ".write_test"
            test_file.write_text("test")
            test_file.unlink()
        except OSError as e:
            return self._fail("state_file", GuardError(
                code=ExitCode.STATE_FILE_UNWRITABLE,
                message=f"Registry state file is not writable: {path}",
                details=str(e),
            ))

        logger.debug("guard_passed", guard="state_file", path=str(path))
        return Ok(None)

    @staticmethod
    def _fail(guard: str, error: GuardError) -> Result[None, GuardError]:
        logger.error(
            "guard_failed",
            guard=guard,
            code=error.code,
            message=error.message,
            details=error.details,
        )
        return Err(error)
