#!/usr/bin/env python3
"""ClawBridge - Unified entry point.

- status → Show runtime status as JSON (exit 0 if a bridge is running)
- anything else → Headless CLI / interactive chat
"""

import sys
import json


def main():
    """Main entry point."""
    args = sys.argv[1:]

    # Handle 'status' command - for scripts and health checks
    if args and args[0] == "status":
        from .runtime import get_status
        status = get_status()
        print(json.dumps(status, indent=2))
        sys.exit(0 if status.get("running") else 1)

    from .cli import main as cli_main
    cli_main()


if __name__ == "__main__":
    main()
