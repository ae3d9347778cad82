"""Serve the essay gateway.

Usage:
  uv run python -m essay_gateway [--host 0.0.0.0] [--port 8000] [--log-level info]
"""

import argparse
import logging


def main(argv=None):
    parser = argparse.ArgumentParser(description="Essay generation proxy with API key rotation")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    import uvicorn

    from essay_gateway.app import create_app

    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
