#!/usr/bin/env python3
"""
Local launcher for the WhatsApp gateway.

    python run.py                # set up .venv (first run) and serve
    python run.py --skip-install # serve with whatever .venv already has

Setup installs the package plus the Chromium build Playwright drives; the
WhatsApp login itself is kept in AUTH_DIR between runs.
"""
import argparse
import os
import subprocess
import sys
import venv
from pathlib import Path

ROOT = Path(__file__).parent.resolve()
VENV_DIR = ROOT / ".venv"
INSTALLED_MARKER = VENV_DIR / ".gateway-installed"


def venv_python() -> Path:
    if os.name == "nt":
        return VENV_DIR / "Scripts" / "python.exe"
    return VENV_DIR / "bin" / "python"


def setup_venv(force: bool = False) -> None:
    if not VENV_DIR.exists():
        print("Creating .venv ...")
        venv.EnvBuilder(with_pip=True).create(str(VENV_DIR))
    if INSTALLED_MARKER.exists() and not force:
        return

    py = str(venv_python())
    print("Installing whatsapp-gateway and Chromium ...")
    subprocess.check_call([py, "-m", "pip", "install", "-U", "pip"])
    subprocess.check_call([py, "-m", "pip", "install", "-e", str(ROOT)])
    subprocess.check_call([py, "-m", "playwright", "install", "chromium"])
    INSTALLED_MARKER.touch()


def serve() -> int:
    host = os.getenv("HOST", "0.0.0.0")
    port = os.getenv("PORT", "3000")
    auth_dir = Path(os.getenv("AUTH_DIR", "./wwebjs_auth"))
    auth_dir.mkdir(parents=True, exist_ok=True)
    print(f"WhatsApp gateway on http://{host}:{port}/ (session in {auth_dir})")
    cmd = [
        str(venv_python()), "-m", "uvicorn", "whatsapp_gateway.main:app",
        "--host", host, "--port", port,
        "--log-level", os.getenv("LOG_LEVEL", "info").lower(),
    ]
    return subprocess.call(cmd)


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the WhatsApp gateway locally")
    parser.add_argument("--skip-install", action="store_true", help="do not touch .venv")
    parser.add_argument("--reinstall", action="store_true", help="reinstall even if already set up")
    args = parser.parse_args()

    if not args.skip_install:
        setup_venv(force=args.reinstall)
    elif not venv_python().exists():
        print(".venv is missing; run without --skip-install first")
        return 1
    return serve()


if __name__ == "__main__":
    sys.exit(main())
