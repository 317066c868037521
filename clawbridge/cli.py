#!/usr/bin/env python3
"""ClawBridge CLI - talk to an OpenClaw gateway from the terminal.

Usage:
    clawbridge                              # Interactive chat (development gateway)
    clawbridge --send "hello"               # One-shot message, prints the reply
    clawbridge --url ws://host:3377 --protocol single
    clawbridge status                       # Runtime status as JSON

Environment variables (alternative to args):
    OPENCLAW_WS_URL        Gateway URL override
    CLAWBRIDGE_MODE        development | production | device (default: development)
    OPENCLAW_TOKEN         Auth token passed in the connect handshake
    CLAWBRIDGE_PROTOCOL    keyed | single (default: keyed)
    CLAWBRIDGE_CHANNEL     Channel name sent with each message
    CLAWBRIDGE_ACCOUNT_ID  Account id sent with each message
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Callable, Optional

from dotenv import load_dotenv

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("clawbridge")


class ClawBridgeCLI:
    """Headless ClawBridge client."""

    def __init__(
        self,
        url_supplier: Callable[[], str],
        protocol: str = "keyed",
        token: str = "",
        channel: str = "clawbridge",
        account_id: str = "default",
        client_id: str = "clawbridge",
        locale: str = "en-US",
        timeout: Optional[float] = None,
        message: Optional[str] = None,
    ):
        self.url_supplier = url_supplier
        self.protocol = protocol
        self.token = token
        self.channel = channel
        self.account_id = account_id
        self.client_id = client_id
        self.locale = locale
        self.timeout = timeout
        self.message = message

        self._client = None
        self._runtime_info = None
        self._unsubscribe = None
        self._main_task: Optional[asyncio.Task] = None

    def _build_client(self):
        from .bridge import BridgeClient, REQUEST_TIMEOUT_SECONDS
        from .protocol import ClientIdentity, get_protocol
        from .runtime import get_version

        if self.protocol == "keyed":
            protocol = get_protocol("keyed", channel=self.channel, account_id=self.account_id)
        else:
            protocol = get_protocol(self.protocol)

        identity = ClientIdentity(
            client_id=self.client_id,
            version=get_version(),
            locale=self.locale,
            auth={"token": self.token} if self.token else {},
        )

        return BridgeClient(
            url_supplier=self.url_supplier,
            protocol=protocol,
            identity=identity,
            request_timeout=self.timeout or REQUEST_TIMEOUT_SECONDS,
            log_callback=self._log_bridge,
        )

    @staticmethod
    def _log_bridge(message: str, level: str) -> None:
        levels = {
            "info": logging.INFO,
            "success": logging.INFO,
            "warn": logging.WARNING,
            "error": logging.ERROR,
        }
        log.log(levels.get(level, logging.INFO), message)

    async def run(self) -> int:
        """Run the client. Returns exit code."""
        self._main_task = asyncio.current_task()

        # Setup signal handlers
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._shutdown)
            except NotImplementedError:
                pass  # Windows event loops have no signal handlers

        try:
            url = self.url_supplier()
        except ValueError as e:
            log.error(str(e))
            return 1

        log.info("=" * 50)
        log.info("ClawBridge - Starting")
        log.info(f"Gateway: {url} ({self.protocol} protocol)")
        log.info("=" * 50)

        self._client = self._build_client()

        from .runtime import write_runtime_info
        self._runtime_info = write_runtime_info(gateway_url=url, protocol=self.protocol)
        self._unsubscribe = self._client.connectivity.subscribe(
            self._runtime_info.update_connection_status
        )

        try:
            if self.message is not None:
                return await self._send_once(self.message)

            if not await self._client.connect():
                log.warning("Gateway not reachable yet - messages will retry the connection")

            from .chat import run_chat
            await run_chat(self._client)
            return 0

        except asyncio.CancelledError:
            log.info("Interrupted")
            return 130
        finally:
            await self._cleanup()

    async def _send_once(self, text: str) -> int:
        from .term_ui import print_response

        response = await self._client.send_message(text)
        if response is None:
            log.error("No answer from gateway")
            return 1
        print_response(response)
        return 0

    def _shutdown(self) -> None:
        """Graceful shutdown."""
        log.info("Shutting down...")
        if self._main_task and not self._main_task.done():
            self._main_task.cancel()

    async def _cleanup(self) -> None:
        """Cleanup resources."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._client:
            await self._client.disconnect()

        from .runtime import RuntimeInfo
        RuntimeInfo.clear()

        log.info("Goodbye!")


def _env_or_saved(name: str, env_value: str, saved_value: str) -> str:
    """Explicit environment variables win over the saved config file."""
    return env_value if os.getenv(name) else saved_value


def main():
    """CLI entry point."""
    load_dotenv()

    from .config import BridgeConfig, load_config, resolve_gateway_url

    env = load_config()
    saved = BridgeConfig.load()

    parser = argparse.ArgumentParser(
        description="ClawBridge - WebSocket bridge to an OpenClaw agent gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  clawbridge                                  # Chat via the development gateway
  clawbridge --mode production --token abc123 # Chat via the production gateway
  clawbridge --send "What's on my calendar?"  # One-shot message
  clawbridge --url ws://10.0.0.5:3377 --protocol single
  clawbridge status                           # Is a bridge running? (JSON)
        """,
    )

    parser.add_argument(
        "--url",
        default=None,
        help="Gateway WebSocket URL (or set OPENCLAW_WS_URL env var)",
    )
    parser.add_argument(
        "--mode",
        choices=["development", "production", "device"],
        default=None,
        help="Pick the gateway URL by mode (default: CLAWBRIDGE_MODE or development)",
    )
    parser.add_argument(
        "--protocol",
        choices=["keyed", "single"],
        default=_env_or_saved("CLAWBRIDGE_PROTOCOL", env["PROTOCOL"], saved.protocol),
        help="Wire protocol: keyed req/res frames or single in-flight message (default: keyed)",
    )
    parser.add_argument(
        "--token",
        default=env["AUTH_TOKEN"] or saved.auth_token,
        help="Auth token for the connect handshake (or set OPENCLAW_TOKEN env var)",
    )
    parser.add_argument(
        "--channel",
        default=_env_or_saved("CLAWBRIDGE_CHANNEL", env["CHANNEL"], saved.channel),
        help="Channel name sent with each message",
    )
    parser.add_argument(
        "--account-id",
        default=_env_or_saved("CLAWBRIDGE_ACCOUNT_ID", env["ACCOUNT_ID"], saved.account_id),
        help="Account id sent with each message",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for each reply (default: 30)",
    )
    parser.add_argument(
        "--send",
        metavar="TEXT",
        default=None,
        help="Send one message, print the reply and exit",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help="Remember --url, --protocol, --token, --channel and --account-id",
    )
    parser.add_argument(
        "--forget-token",
        action="store_true",
        help="Remove the saved auth token and exit",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.forget_token:
        saved.clear_token()
        log.info("Saved token removed")
        sys.exit(0)

    if args.save:
        saved.gateway_url = args.url or ""
        saved.protocol = args.protocol
        saved.auth_token = args.token
        saved.channel = args.channel
        saved.account_id = args.account_id
        saved.save()
        log.info("Configuration saved")

    if args.url:
        url_supplier = lambda: args.url
    elif saved.gateway_url and not env["GATEWAY_URL_OVERRIDE"]:
        url_supplier = lambda: saved.gateway_url
    else:
        url_supplier = lambda: resolve_gateway_url(args.mode)

    cli = ClawBridgeCLI(
        url_supplier=url_supplier,
        protocol=args.protocol,
        token=args.token,
        channel=args.channel,
        account_id=args.account_id,
        client_id=env["CLIENT_ID"],
        locale=env["LOCALE"],
        timeout=args.timeout,
        message=args.send,
    )

    exit_code = asyncio.run(cli.run())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
