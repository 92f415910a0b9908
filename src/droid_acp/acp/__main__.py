"""ACP Agent entry point with proper stdio isolation.

Stdout is reserved for JSON-RPC. The stdout filter and stderr logging are
installed before the agent module (and everything it imports) is loaded.

Usage:
    python -m droid_acp.acp
"""

from __future__ import annotations

import logging
import os

from ..config import is_env_enabled
from ..stdio import install_stdio_guards

# =============================================================================
# INSTALL PROTECTIONS IMMEDIATELY - before any other imports
# =============================================================================
install_stdio_guards(debug=is_env_enabled(os.environ.get("DROID_DEBUG")))

import asyncio  # noqa: E402

from .agent import run_stdio_agent  # noqa: E402


def main() -> None:
    """Run the ACP agent with stdio transport."""
    logging.getLogger(__name__).info("Starting droid ACP agent (stdio mode)")
    try:
        asyncio.run(run_stdio_agent())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Shutting down")


if __name__ == "__main__":
    main()
