"""
Container runtime adapter.

The orchestrator talks to the runtime only through `ContainerRuntime`; the
production implementation shells out to ``docker compose`` in the stack's
working directory so that ``.env`` and override files are picked up the same
way an operator running the command by hand would get them.
"""
import shlex
import shutil
import subprocess
from pathlib import Path

import docker

from stackbackup.errors import RuntimeAdapterError
from stackbackup.utils import get_logger

logger = get_logger(__name__)

COMPOSE_TIMEOUT = 300
QUERY_TIMEOUT = 60


def manual_command(workdir, services=None):
    """Return the shell command an operator can run to bring the stack back up."""
    parts = ['cd', shlex.quote(str(workdir)), '&&', 'docker', 'compose', 'up', '-d']
    parts.extend(shlex.quote(s) for s in sorted(services or ()))
    return ' '.join(parts)


class ContainerRuntime:
    """Contract used by the orchestrator and restore flow."""

    def list_running_services(self, workdir):
        """Return the set of service names currently running for the stack.

        Raises:
            RuntimeAdapterError: if the runtime could not be queried
        """
        raise NotImplementedError()

    def stop(self, workdir):
        """Stop the whole stack. Returns True on success."""
        raise NotImplementedError()

    def start(self, workdir, services):
        """Start exactly `services` (an empty set starts the whole stack)."""
        raise NotImplementedError()

    def ping(self):
        """Return True if the container runtime is reachable."""
        raise NotImplementedError()


def _detect_compose_cmd():
    """Return the compose command prefix: the `docker compose` plugin, else `docker-compose`."""
    if shutil.which('docker'):
        try:
            subprocess.run(['docker', 'compose', 'version'], capture_output=True, check=True, timeout=5)
            return ['docker', 'compose']
        except (subprocess.SubprocessError, OSError):
            pass
    if shutil.which('docker-compose'):
        return ['docker-compose']
    return ['docker', 'compose']


class ComposeRuntime(ContainerRuntime):
    """`ContainerRuntime` backed by the docker compose CLI and the docker SDK."""

    def __init__(self, compose_cmd=None, timeout=COMPOSE_TIMEOUT):
        self._compose_cmd = list(compose_cmd) if compose_cmd else None
        self.timeout = timeout

    @property
    def compose_cmd(self):
        if self._compose_cmd is None:
            self._compose_cmd = _detect_compose_cmd()
        return self._compose_cmd

    def _run(self, workdir, args, timeout):
        cmd = self.compose_cmd + list(args)
        logger.debug("Running in %s: %s", workdir, ' '.join(cmd))
        return subprocess.run(
            cmd,
            cwd=str(workdir),
            capture_output=True,
            text=True,
            timeout=timeout
        )

    def list_running_services(self, workdir):
        try:
            result = self._run(workdir, ['ps', '--services', '--filter', 'status=running'], QUERY_TIMEOUT)
        except (subprocess.SubprocessError, OSError) as e:
            raise RuntimeAdapterError(f"Could not query running services in {workdir}: {e}") from e
        if result.returncode != 0:
            raise RuntimeAdapterError(
                f"Could not query running services in {workdir}: {(result.stderr or '').strip()}"
            )
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def stop(self, workdir):
        try:
            result = self._run(workdir, ['down'], self.timeout)
        except (subprocess.SubprocessError, OSError) as e:
            logger.error("Exception stopping stack in %s: %s", workdir, e)
            return False
        if result.returncode != 0:
            logger.error("Failed to stop stack in %s: %s", workdir, (result.stderr or '').strip())
            return False
        return True

    def start(self, workdir, services):
        args = ['up', '-d'] + sorted(services or ())
        try:
            result = self._run(workdir, args, self.timeout)
        except (subprocess.SubprocessError, OSError) as e:
            logger.error("Exception starting stack in %s: %s", workdir, e)
            return False
        if result.returncode != 0:
            logger.error("Failed to start stack in %s: %s", workdir, (result.stderr or '').strip())
            return False
        return True

    def ping(self):
        try:
            client = docker.from_env()
            try:
                return bool(client.ping())
            finally:
                client.close()
        except Exception as e:
            logger.error("Docker daemon is not reachable: %s", e)
            return False


def is_stack_running(runtime, workdir):
    """Return True if at least one service of the stack is running (query errors count as not running)."""
    try:
        return bool(runtime.list_running_services(Path(workdir)))
    except RuntimeAdapterError as e:
        logger.warning("%s", e)
        return False
