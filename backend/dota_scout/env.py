from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).resolve().parents[1]

PROVIDER_DEFAULTS = {
    "OPENDOTA_AUTH_HEADER": "Authorization",
    "STRATZ_AUTH_HEADER": "Authorization",
    "UPSTREAM_TOKEN_PREFIX": "Bearer",
}


def _env_files() -> List[Path]:
    override = os.getenv("DOTA_SCOUT_ENV_FILE")
    if override:
        return [Path(override)]
    return [BACKEND_DIR / ".env", BACKEND_DIR.parent / ".env"]


def load_env() -> Optional[Path]:
    """Load the first .env found (backend/ wins over the repo root).

    Values already present in the process environment are not overridden.
    Returns the file that was loaded, if any.
    """
    loaded: Optional[Path] = None
    for path in _env_files():
        if path.exists():
            load_dotenv(path)
            loaded = path
            break
    if loaded is None:
        load_dotenv()

    for name, value in PROVIDER_DEFAULTS.items():
        os.environ.setdefault(name, value)
    return loaded
