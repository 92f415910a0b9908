"""droid-acp: Agent Client Protocol bridge for the Factory droid CLI.

The bridge speaks ACP to the editor over stdio and drives one ``droid``
subprocess per session over the line-delimited stream-jsonrpc dialect.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
