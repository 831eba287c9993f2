# kalina: CLI entrypoint. Parses --home/-d and --model, configures logging and runs the REPL.

import asyncio
import logging
import pathlib
import sys

from .app import Kalina
from .config import KALINA_HOME, LOG_LEVEL
from .settings import load_settings, section


def _configure_logging(home: pathlib.Path) -> None:
    """Root logging at the level from settings.yaml logging.level, else KALINA_LOG_LEVEL."""
    level_name = str(section(load_settings(home), "logging").get("level") or LOG_LEVEL).upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main() -> None:
    """
    Kalina CLI entrypoint.

    Usage:
        kalina [--home PATH|-d PATH] [--model ID]

    Notes:
        - OPENAI_API_KEY (or settings.yaml api.api_key) must be set to send messages.
        - Conversations, long-term memory and code memory are stored under the
          data directory (default ~/.kalina, or KALINA_HOME).

    Options:
        -d, --home PATH   Data directory.
        --model ID        Chat model id for this session.
    """
    args = sys.argv[1:]

    if any(a in ("-h", "--help") for a in args):
        print("Usage: kalina [--home PATH|-d PATH] [--model ID]")
        print("Options:")
        print("  -d, --home PATH   Data directory (default: $KALINA_HOME or ~/.kalina)")
        print("  --model ID        Chat model id (e.g. gpt-5-mini, gpt-5)")
        print("Environment:")
        print("  OPENAI_API_KEY, AI_MODEL, AI_IMAGE_MODEL, OPENAI_BASE_URL, KALINA_HOME, KALINA_LOG_LEVEL")
        return

    home = None
    model = None
    i = 0
    while i < len(args):
        a = args[i]
        if a in ("-d", "--home", "--model"):
            if i + 1 >= len(args):
                print(f"error: {a} requires an argument")
                return
            if a == "--model":
                model = args[i + 1]
            else:
                home = args[i + 1]
            i += 2
            continue
        if a.startswith("--home="):
            home = a.split("=", 1)[1]
            i += 1
            continue
        if a.startswith("--model="):
            model = a.split("=", 1)[1]
            i += 1
            continue
        print(f"error: unknown argument: {a}")
        return

    home_path = pathlib.Path(home).expanduser().resolve() if home else KALINA_HOME
    _configure_logging(home_path)
    try:
        asyncio.run(Kalina(home_path, model=model).run())
    except KeyboardInterrupt:
        print("\nGoodbye.")


if __name__ == "__main__":
    main()
