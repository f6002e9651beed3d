"""Ships a Docker Compose project to the instance and (re)starts it."""

import logging
import os
import shlex
from typing import List, Sequence

from .errors import ConfigError, ProvisionFailed
from .remote import CommandOutput, RemoteSession

logger = logging.getLogger(__name__)

COMPOSE_FILES: Sequence[str] = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")

# Run in order inside the project directory on the instance.
COMPOSE_COMMANDS: List[str] = [
    "docker compose down --remove-orphans",
    "docker compose up -d --build",
    "docker compose ps",
]


def find_compose_file(project_dir: str) -> str:
    for name in COMPOSE_FILES:
        path = os.path.join(project_dir, name)
        if os.path.isfile(path):
            return path
    raise ConfigError(f"No docker compose file found in {project_dir}")


def deploy_project(session: RemoteSession, project_dir: str, remote_dir: str,
                   commands: Sequence[str] = COMPOSE_COMMANDS) -> List[CommandOutput]:
    """
    Copies the project to the instance and brings the containers up.

    Simple Explanation:
    This is what you'd otherwise do by hand: copy your project folder to the
    server (skipping things like Git history and local caches), log in, go
    to that folder and run ``docker compose up``. The images are built on the
    server itself, so nothing big has to be uploaded.

    Args:
        session (RemoteSession): An open SSH session to the instance.
        project_dir (str): Local project directory with a compose file in it.
        remote_dir (str): Directory on the instance to copy the project to.
        commands (Sequence[str]): Commands to run in ``remote_dir``, in order.

    Returns:
        List[CommandOutput]: Output of every command that ran.

    Raises:
        ConfigError: If the project has no compose file.
        ProvisionFailed: As soon as one command exits non-zero.
    """
    find_compose_file(project_dir)
    session.upload_directory(project_dir, remote_dir)

    outputs: List[CommandOutput] = []
    for command in commands:
        logger.info(f"Running '{command}' in {remote_dir}...")
        output = session.execute(f"cd {shlex.quote(remote_dir)} && {command}")
        outputs.append(output)
        if not output.ok:
            logger.error(f"'{command}' failed with status {output.exit_status}:\n{output.stderr.strip()}")
            raise ProvisionFailed(
                f"'{command}' exited with status {output.exit_status}",
                resource_id=session.address,
                output=output,
                stage="deploy",
            )
        if output.stdout.strip():
            logger.info(output.stdout.rstrip())

    logger.info(f"✅ Project deployed to {session.address}:{remote_dir}")
    return outputs
