"""
uchelper - Unified Coding Helper

One place to configure credentials and endpoints for AI coding assistants.

Key Features:
    - Platform API keys encrypted at rest with a password (AES-256-GCM)
    - Per-tool credential store sealed with a machine-bound key
    - Credentials delivered as environment variables or wrapper scripts
    - Every external command validated before it is spawned, never via a shell

Design Principles:
    - Secrets never touch disk in plaintext unless explicitly exported
    - Security-relevant failures are loud: nothing falls back to a default
    - No shell: commands run as argument vectors only
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from uchelper.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
