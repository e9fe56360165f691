"""CLI entrypoint for running the job API server."""
from __future__ import annotations

import argparse
import os

from . import create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the generation job API server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")
    args = parser.parse_args()

    app = create_app()

    if not args.debug or os.environ.get("WERKZEUG_RUN_MAIN") == "true":
        print(f"Job API running on http://{args.host}:{args.port}", flush=True)

    # Reloader would start a second process with a different epoch and an empty store.
    app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=False, threaded=True)


if __name__ == "__main__":  # pragma: no cover
    main()
