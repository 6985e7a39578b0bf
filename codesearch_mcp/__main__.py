"""Run with: python -m codesearch_mcp serve"""

from codesearch_mcp.cli import main

if __name__ == "__main__":
    main()
