"""
Secret lookup helpers.

Secrets are read from the environment, or from a file whose path is given
in <NAME>_FILE (docker/k8s secret mounts).
"""

import os
from typing import Optional


def read_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Read a secret from NAME or from the file referenced by NAME_FILE.

    Args:
        name: Secret name, e.g. 'JWT_SECRET'
        default: Returned when neither source is set

    Returns:
        The secret value with surrounding whitespace stripped, or default
    """
    value = os.environ.get(name)
    if value:
        return value.strip()

    file_path = os.environ.get(f"{name}_FILE")
    if file_path and os.path.isfile(file_path):
        with open(file_path, "r") as f:
            return f.read().strip()

    return default
