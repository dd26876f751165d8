import os
from typing import List, Optional

CONTAINER_WORKSPACE = "/workspace"


def to_container_path(path: str, workspace_path: str) -> str:
    """
    Maps a host path inside the workspace to its location under /workspace.

    Raises:
        ValueError: if the path is outside the mounted workspace.
    """
    workspace_path = os.path.abspath(workspace_path)
    abs_path = os.path.abspath(path)
    rel_path = os.path.relpath(abs_path, workspace_path)
    if rel_path == ".." or rel_path.startswith(".." + os.sep) or os.path.isabs(rel_path):
        raise ValueError(f"{path} is not inside workspace {workspace_path}; it would not be visible to Docker.")
    if rel_path == ".":
        return CONTAINER_WORKSPACE
    return f"{CONTAINER_WORKSPACE}/{rel_path.replace(os.sep, '/')}"


def build_docker_command(command: str, image: str, workspace_path: str, cwd: Optional[str] = None,
                         volumes: Optional[List[str]] = None) -> List[str]:
    """
    Wraps a shell command so it runs inside a throwaway container.

    Args:
        command (str): The command to run inside the container.
        image (str): The Docker image to use.
        workspace_path (str): Absolute path of the local workspace, mounted at /workspace.
        cwd (str): Working directory inside the container (default: /workspace).
        volumes (list): Optional extra volume mappings ["host_path:container_path"].

    Returns:
        list: argv for subprocess.
    """
    # --rm cleans up the container after exit
    docker_cmd = [
        "docker", "run", "--rm",
        "-v", f"{os.path.abspath(workspace_path)}:{CONTAINER_WORKSPACE}"
    ]

    if volumes:
        for vol in volumes:
            docker_cmd.extend(["-v", vol])

    docker_cmd.extend([
        "-w", cwd or CONTAINER_WORKSPACE,
        image,
        "bash", "-c", command
    ])
    return docker_cmd
