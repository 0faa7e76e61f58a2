#!/usr/bin/env python3
"""main.py

RelayChat server entrypoint (development / single process).

Settings come from ``server_config.json`` (see config.py) with environment
overrides applied on top. Under Gunicorn use ``wsgi.py`` instead.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from config import apply_env_overrides, load_settings, save_settings
from constants import CONFIG_FILE
from server_init import run_web_server


def configure_logging(settings: dict) -> None:
    """Configure file + stdout logging."""
    log_level_str = str(settings.get("log_level", "INFO")).upper()
    log_format = settings.get(
        "log_format",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    log_file_path = settings.get("log_file_path", "logs/server.log")

    log_dir = os.path.dirname(log_file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    log_level = getattr(logging, log_level_str, logging.INFO)
    logging.basicConfig(level=log_level, format=log_format, filename=log_file_path, filemode="a")
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(logging.Formatter(log_format))
    logging.getLogger().addHandler(stream)
    logging.info("Logging configured (level=%s)", log_level_str)


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="RelayChat server")
    p.add_argument("--config", default=os.getenv("RELAYCHAT_CONFIG") or CONFIG_FILE,
                   help="path to server config JSON")
    p.add_argument("--write-config", action="store_true",
                   help="write the effective settings to --config and exit")
    return p.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    settings_path = Path(args.config)

    settings = load_settings(settings_path)
    apply_env_overrides(settings)

    if args.write_config:
        save_settings(settings_path, settings)
        print(f"Saved settings to {settings_path}")
        return

    configure_logging(settings)
    run_web_server(settings, settings_file=settings_path)


if __name__ == "__main__":
    main()
