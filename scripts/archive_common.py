import os
import sys

MIN_PYTHON = (3, 9)

# Shared by register_app.py and archive_libraries.py. Not a secret in practice.
ARCHIVE_CERT_PASSWORD = "SPO-Archive-Cert!"

MARKER_NAME = ".Archived"
LOG_HEADER = ["URL", "FilesDownloaded", "FoldersCreated", "FilesSkipped"]


class ArchiveError(Exception):
    """Raised for failures the archiving tools detect themselves."""


def fail(message):
    print(f"ERROR: {message}")
    sys.exit(1)


def check_python_version():
    if sys.version_info < MIN_PYTHON:
        fail(f"Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]} or newer is required "
             f"(running {sys.version.split()[0]})")


def get_env(name, default=None, required=False):
    val = os.environ.get(name, default)
    if required and not val:
        fail(f"Missing required environment variable: {name}")
    return val


def get_param(argv, index, env_name, label):
    """Positional argument ``index`` of argv, falling back to ``env_name``."""
    if len(argv) > index and argv[index]:
        return argv[index]
    val = get_env(env_name)
    if not val:
        fail(f"Missing required parameter: {label} (argument {index} or {env_name})")
    return val


def working_dir():
    return get_env("ARCHIVE_WORKING_DIR", os.getcwd())


def tenant_paths(tenant, base=None):
    """Files the two tools share for ``tenant``, keyed by purpose."""
    base = base or working_dir()
    return {
        "sites": os.path.join(base, f"{tenant}-sites.txt"),
        "client_id": os.path.join(base, f"{tenant}-clientid.txt"),
        "certificate": os.path.join(base, f"{tenant}.pfx"),
        "log": os.path.join(base, f"{tenant}-archive-log.csv"),
    }


def tenant_domain(tenant):
    return f"{tenant}.onmicrosoft.com"
