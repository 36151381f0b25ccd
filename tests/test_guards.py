"""Tests for blt.runner.guards: start-up precondition checks."""

import asyncio

from blt.archive import ArchiveConfigurationError, TransientJobError
from blt.config import ServiceConfig
from blt.runner import StartupGuards
from blt.utils.result import ExitCode

from conftest import FakeArchiveClient


class PingFailingArchive(FakeArchiveClient):
    def __init__(self, error: Exception) -> None:
        super().__init__()
        self.error = error

    async def ping(self):
        raise self.error


def check(config: ServiceConfig, archive: FakeArchiveClient):
    return asyncio.run(StartupGuards(config, archive).check_all())


class TestStartupGuards:
    def test_all_pass(self, archive, tmp_path):
        config = ServiceConfig()
        config.registry.state_file = tmp_path / "state" / "registry.json"
        assert check(config, archive).is_ok()
        assert (tmp_path / "state").is_dir()

    def test_archive_unreachable(self):
        result = check(ServiceConfig(), PingFailingArchive(TransientJobError("refused")))
        assert result.is_err()
        assert result.unwrap_err().code == ExitCode.SERVICE_UNREACHABLE
        assert "refused" in str(result.unwrap_err())

    def test_archive_without_peers(self):
        error = ArchiveConfigurationError("Orthanc is not configured with any peers")
        result = check(ServiceConfig(), PingFailingArchive(error))
        assert result.unwrap_err().code == ExitCode.ARCHIVE_UNCONFIGURED

    def test_state_file_not_writable(self, archive, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        config = ServiceConfig()
        config.registry.state_file = blocker / "registry.json"

        result = check(config, archive)

        assert result.unwrap_err().code == ExitCode.STATE_FILE_UNWRITABLE
        # the archive is not contacted once a local check failed
        assert archive.calls == []
