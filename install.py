#!/usr/bin/env python3
"""Bootstrap a local llm-chat-bot checkout.

Creates ``.venv``, installs the package, seeds ``config.yaml`` and ``.env``
from their examples and creates the SQLite schema.

Usage:
    python install.py            # runtime install
    python install.py --dev      # editable install with the test extra
    python install.py --no-db    # skip schema creation
"""

import argparse
import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
VENV_DIR = os.path.join(PROJECT_DIR, ".venv")
TEMPLATES = [("config.example.yaml", "config.yaml"), (".env.example", ".env")]


def _venv_executable(name: str) -> str:
    bin_dir = "Scripts" if platform.system() == "Windows" else "bin"
    return os.path.join(VENV_DIR, bin_dir, name)


def _ensure_venv() -> None:
    if os.path.isdir(VENV_DIR):
        print(f"Reusing virtual environment at {VENV_DIR}")
        return
    print(f"Creating virtual environment at {VENV_DIR}")
    subprocess.check_call([sys.executable, "-m", "venv", VENV_DIR])


def _install_package(dev: bool) -> None:
    pip = _venv_executable("pip")
    subprocess.check_call([pip, "install", "--upgrade", "pip"])
    target = ["-e", ".[dev]"] if dev else ["."]
    print(f"Installing llm-chat-bot ({'editable, with test extra' if dev else 'runtime'})")
    subprocess.check_call([pip, "install", *target], cwd=PROJECT_DIR)


def _seed_templates() -> None:
    os.makedirs(os.path.join(PROJECT_DIR, "data"), exist_ok=True)
    for example, target in TEMPLATES:
        example_path = os.path.join(PROJECT_DIR, example)
        target_path = os.path.join(PROJECT_DIR, target)
        if os.path.exists(target_path):
            print(f"Keeping existing {target}")
        elif os.path.exists(example_path):
            shutil.copy(example_path, target_path)
            print(f"Wrote {target} from {example}")


def _create_schema() -> None:
    print("Creating database schema")
    subprocess.check_call(
        [_venv_executable("python"), "-m", "llm_chat_bot", "init-db"], cwd=PROJECT_DIR
    )


def _print_next_steps() -> None:
    if platform.system() == "Windows":
        activate = r".\.venv\Scripts\activate"
    else:
        activate = "source .venv/bin/activate"
    print(
        "\nDone. Next:\n"
        "  - put TELEGRAM_BOT_TOKEN, OPENROUTER_API_KEY and ADMIN_TELEGRAM_IDS in .env\n"
        f"  - {activate}\n"
        "  - python -m llm_chat_bot config-check\n"
        "  - python -m llm_chat_bot start"
    )


def main() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]}+ is required, "
            f"found {sys.version_info.major}.{sys.version_info.minor}."
        )

    parser = argparse.ArgumentParser(description="Install llm-chat-bot into .venv")
    parser.add_argument("--dev", action="store_true", help="Editable install with test tools")
    parser.add_argument("--no-db", action="store_true", help="Skip creating the database schema")
    args = parser.parse_args()

    _ensure_venv()
    _install_package(args.dev)
    _seed_templates()
    if not args.no_db:
        _create_schema()
    _print_next_steps()


if __name__ == "__main__":
    main()
