"""
Tunnel CLI entry point.

Start a receiver in one terminal, then send to it from another.

Usage::

    python -m pytunnel receive --listen 127.0.0.1:4433
    python -m pytunnel send 12D3KooW... --peer 127.0.0.1:4433
    python -m pytunnel send 12D3KooW... --peer 127.0.0.1:4433 --count 3 --message hello

Commands:
    receive    Print every payload received until interrupted
    send       Send numbered messages to a receiver address, then exit

Options:
    --listen   Socket address the receiver binds to (default: 127.0.0.1, ephemeral port)
    --peer     Socket address of the receiver being sent to (required for send)
    --count    Number of messages to send (default: 10)
    --message  Message text (default: "This is iteration <i>.")
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from pytunnel.config import TunnelConfig
from pytunnel.exceptions import AddressParseError, TunnelError
from pytunnel.identity import PublicKey
from pytunnel.transport import AddressBook, QuicTransport, SocketAddress
from pytunnel.tunnel import Tunnel

DEFAULT_COUNT = 10
"""Messages sent by `send` when --count is not given."""

logger = logging.getLogger(__name__)


class ColoredFormatter(logging.Formatter):
    """Logging formatter with ANSI colors for better readability."""

    # ANSI color codes
    GREY = "\x1b[38;5;244m"
    BLUE = "\x1b[38;5;39m"
    GREEN = "\x1b[38;5;40m"
    YELLOW = "\x1b[38;5;220m"
    RED = "\x1b[38;5;196m"
    BOLD_RED = "\x1b[38;5;196;1m"
    CYAN = "\x1b[38;5;51m"
    RESET = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        color = self.LEVEL_COLORS.get(record.levelno, self.RESET)

        timestamp = self.formatTime(record, self.datefmt)
        colored_time = f"{self.CYAN}{timestamp}{self.RESET}"
        levelname = f"{color}{record.levelname:8}{self.RESET}"
        name = f"{self.BLUE}{record.name}{self.RESET}"

        return f"{colored_time} {levelname} {name}: {record.getMessage()}"


def setup_logging(verbose: bool = False, no_color: bool = False) -> None:
    """Configure logging for the CLI with optional colors."""
    level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    handler.setLevel(level)

    if no_color:
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        formatter = ColoredFormatter(datefmt="%Y-%m-%d %H:%M:%S")

    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    # aioquic logs every packet at DEBUG.
    logging.getLogger("quic").setLevel(logging.INFO)


def format_payload(data: bytes) -> str:
    """Render a payload for the terminal: text if it decodes, hex otherwise."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return f"0x{data.hex()}"


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {number}")
    return number


def _socket_address(value: str) -> SocketAddress:
    try:
        return SocketAddress.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _listen_address(value: str) -> SocketAddress:
    # Unlike --peer, port 0 is allowed: the OS picks one.
    host, sep, port = value.rpartition(":")
    if sep and port == "0":
        return SocketAddress(host=host.strip("[]"), port=0)
    return _socket_address(value)


def _peer_address(value: str) -> PublicKey:
    try:
        return PublicKey.parse(value)
    except AddressParseError as e:
        raise argparse.ArgumentTypeError(e.reason) from None


async def run_receiver(listen: SocketAddress | None) -> None:
    """
    Run a tunnel that prints every payload it receives.

    Runs until cancelled (Ctrl+C), then destroys the tunnel.

    Args:
        listen: Socket address for the receiver endpoint. None binds the
            default host on an ephemeral port.
    """
    config = TunnelConfig()
    if listen is not None:
        config = config.copy_with(listen_host=listen.host, listen_port=listen.port)

    address_book = AddressBook()

    def on_data(sender: PublicKey, data: bytes) -> None:
        print(f"{sender}: {format_payload(data)}", flush=True)

    tunnel = await Tunnel.create(
        on_data,
        config=config,
        transport=QuicTransport(config, address_book),
    )
    try:
        receiver = tunnel.receiver_address()
        logger.info("Receiver address: %s", receiver)
        logger.info("Listening on %s", address_book.resolve(receiver))
        print(f"Send to this tunnel with: --peer {address_book.resolve(receiver)} {receiver}")

        await asyncio.Event().wait()
    finally:
        await tunnel.destroy()


async def run_sender(
    address: PublicKey,
    peer: SocketAddress,
    count: int = DEFAULT_COUNT,
    message: str | None = None,
) -> int:
    """
    Send `count` messages to a receiver, then destroy the tunnel.

    Args:
        address: Receiver address of the peer.
        peer: Socket address the peer's receiver listens on.
        count: Number of messages.
        message: Fixed text for every message. Defaults to numbered messages.

    Returns:
        Number of messages delivered.
    """
    config = TunnelConfig()
    address_book = AddressBook()
    address_book.add(address, peer)

    def on_data(sender: PublicKey, data: bytes) -> None:
        logger.info("Unexpected payload from %s: %s", sender, format_payload(data))

    delivered = 0
    async with await Tunnel.create(
        on_data,
        config=config,
        transport=QuicTransport(config, address_book),
    ) as tunnel:
        logger.info("Sending from %s to %s at %s", tunnel.sender_address(), address, peer)

        for i in range(count):
            text = message if message is not None else f"This is iteration {i}."
            try:
                await tunnel.send(address, text.encode("utf-8"))
            except TunnelError as e:
                logger.error("Message %d failed: %s", i, e)
                break
            delivered += 1
            logger.debug("Message %d delivered", i)

    logger.info("Delivered %d of %d messages", delivered, count)
    return delivered


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for both subcommands."""
    parser = argparse.ArgumentParser(
        prog="pytunnel",
        description="Minimal peer-to-peer data tunnel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored logging output",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    receive = commands.add_parser("receive", help="Print received payloads until interrupted")
    receive.add_argument(
        "--listen",
        type=_listen_address,
        default=None,
        help="Socket address to listen on (default: 127.0.0.1 on an ephemeral port)",
    )

    send = commands.add_parser("send", help="Send numbered messages to a receiver")
    send.add_argument(
        "address",
        type=_peer_address,
        help="Receiver address printed by `pytunnel receive`",
    )
    send.add_argument(
        "--peer",
        type=_socket_address,
        required=True,
        help="Socket address the receiver listens on (host:port)",
    )
    send.add_argument(
        "--count",
        type=_positive_int,
        default=DEFAULT_COUNT,
        help=f"Number of messages to send (default: {DEFAULT_COUNT})",
    )
    send.add_argument(
        "--message",
        default=None,
        help='Message text (default: "This is iteration <i>.")',
    )

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose, args.no_color)

    try:
        if args.command == "receive":
            asyncio.run(run_receiver(args.listen))
        else:
            delivered = asyncio.run(run_sender(args.address, args.peer, args.count, args.message))
            if delivered < args.count:
                sys.exit(1)
    except KeyboardInterrupt:
        # asyncio.run() cancels the running task; the tunnel is destroyed on the way out.
        logger.info("Shutting down...")
    except TunnelError as e:
        logger.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
