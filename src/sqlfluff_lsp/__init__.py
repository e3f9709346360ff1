"""
sqlfluff Language Server Protocol (LSP) adapter.

This package exposes the sqlfluff SQL linter and formatter to editors:
- Diagnostics pushed as the user types (debounced, never stale)
- Document formatting through ``sqlfluff fix``

Usage:
    # Start the LSP server (stdio mode)
    sqlfluff-lsp serve --dialect=ansi

    # Or run as a module
    python -m sqlfluff_lsp serve
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
