"""Chorus — dev launcher. Starts the API server in watch mode."""

import argparse
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="Chorus dev launcher")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=int(PORT))
    parser.add_argument("--characters", type=Path, default=None,
                        help="JSON file with the character cast (default: built-in cast)")
    parser.add_argument("--mode", choices=["single-call", "multi-call", "auto"], default=None,
                        help="Default orchestration mode")
    parser.add_argument("--no-reload", action="store_true",
                        help="Disable auto-reload on code changes")
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args()

    # The app reads its settings from the environment when uvicorn imports it
    if args.characters:
        os.environ["CHARACTERS_FILE"] = str(args.characters.resolve())
    if args.mode:
        os.environ["ORCHESTRATION_MODE"] = args.mode

    print(f"Starting Chorus on http://localhost:{args.port} ...")
    uvicorn.run(
        "chorus.app:app",
        host=args.host,
        port=args.port,
        reload=not args.no_reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
