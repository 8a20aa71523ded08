"""Host identification helpers."""

import os
import platform
import socket
from typing import Optional


def get_effective_hostname(environ: Optional[dict] = None) -> str:
    """Return the hostname used to identify this machine to the server.

    Under WSL the distribution name is appended (``DESKTOP-ABC:Ubuntu``) so
    that several distributions on one Windows host stay distinct.
    """
    env = os.environ if environ is None else environ
    base_hostname = socket.gethostname()
    wsl_distro = env.get("WSL_DISTRO_NAME")

    if wsl_distro:
        return f"{base_hostname}:{wsl_distro}"
    return base_hostname


def get_os_info() -> str:
    """Short OS description sent on registration."""
    return f"{platform.system().lower()} {platform.release()}"
