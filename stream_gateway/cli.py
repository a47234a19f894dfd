"""
cli.py: stream one prompt through the gateway and print the result.

Usage:
    python -m stream_gateway.cli "What is 2+2?"
    echo "What is 2+2?" | python -m stream_gateway.cli
"""

import asyncio
import logging
import sys

from stream_gateway.core.logging import setup_logging
from stream_gateway.gateway.client import get_default_client
from stream_gateway.gateway.errors import GatewayError

logger = logging.getLogger("stream_gateway.cli")


def _write(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


async def main(argv: list[str]) -> int:
    prompt = " ".join(argv).strip() or sys.stdin.read().strip()
    if not prompt:
        logger.error("No prompt given")
        return 2

    client = get_default_client()
    try:
        result = await client.generate(prompt, on_chunk=_write)
    except GatewayError as e:
        logger.error("Generation failed: %s", e)
        return 1

    _write("\n")
    if not result.complete:
        logger.warning("Response ended without metadata envelope")
        return 1
    logger.info("Done: %d chars, %d tokens", len(result.aggregated_text), result.total_tokens)
    return 0


def run() -> None:
    setup_logging(stream=sys.stderr)
    sys.exit(asyncio.run(main(sys.argv[1:])))


if __name__ == "__main__":
    run()
