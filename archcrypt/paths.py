from __future__ import annotations

import os

DEFAULT_BASE = "/var/lib/archcrypt"


def archcrypt_base_path() -> str:
    """Return the base directory for installer state.

    ``ARCHCRYPT_BASE_PATH`` overrides the default ``/var/lib/archcrypt``,
    which is handy on a live ISO where only ``/tmp`` is writable.
    """

    base = os.environ.get("ARCHCRYPT_BASE_PATH") or DEFAULT_BASE
    return os.path.realpath(os.path.expanduser(base))


def logs_dir() -> str:
    return os.path.join(archcrypt_base_path(), "logs")
