"""CLI entry point for the logwatch package."""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
import sys

OPENROUTER_KEYS_URL = "https://openrouter.ai/keys"
MIN_PYTHON = (3, 10)


ENV_TEMPLATE = """PROVIDER=openrouter
OPENROUTER_API_KEY=YOUR_KEY_HERE
LOGWATCH_MODEL=openai/gpt-4o-mini
LOGWATCH_POLL_DELAY=10:minutes
LOGWATCH_TAIL_AMOUNT=10"""


def _print_setup_banner(
    watcher: str,
    provider: str,
    port: int,
    *,
    for_startup: bool = True,
) -> None:
    """Print the endpoints; the .env template is shown only for `setup` or when running on the stub."""
    base = f"http://localhost:{port}"
    header = "Logwatch started" if for_startup else "Logwatch setup"
    print(f"\n{header}: watcher={watcher} provider={provider}")
    print(f"  POST {base}/logs  |  POST {base}/poll  |  GET {base}/diagnostic")
    if for_startup and provider != "stub":
        return
    print(f"\nNo model configured? Get a key at {OPENROUTER_KEYS_URL} and put this in .env:\n")
    for line in ENV_TEMPLATE.splitlines():
        print(f"  {line}")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _ensure_supported_python() -> None:
    if sys.version_info < MIN_PYTHON:
        print(
            "Error: Python {} detected. logwatch requires Python {}.{}+.".format(
                _python_version_str(),
                MIN_PYTHON[0],
                MIN_PYTHON[1],
            ),
            file=sys.stderr,
        )
        sys.exit(2)


def _print_help() -> None:
    print("Logwatch CLI")
    print()
    print("Usage:")
    print("  logwatch               Start the log watcher service")
    print("  logwatch setup         Print setup/env guidance")
    print("  logwatch doctor        Print install/environment diagnostics")
    print()


def _print_doctor() -> None:
    from .config import get_settings

    settings = get_settings()
    print("Logwatch Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('logwatch') or 'not found'}")

    try:
        pip_version = subprocess.check_output(
            [sys.executable, "-m", "pip", "--version"],
            text=True,
            stderr=subprocess.STDOUT,
        ).strip()
    except (OSError, subprocess.CalledProcessError) as exc:  # pragma: no cover - diagnostics fallback
        pip_version = f"unavailable ({exc})"
    print(f"Pip:      {pip_version}")

    print(f"Provider: {settings.provider_name}")
    key_set = bool(settings.openrouter_api_key if settings.provider_name == "openrouter" else settings.openai_api_key)
    if settings.provider_name != "stub" and not key_set:
        print("Issue: no API key set for the provider; completions will use the stub transport.")
    if sys.version_info < MIN_PYTHON:
        print(
            f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}."
        )
    print()
    print("Recommended install flow:")
    print("  pipx install logwatch")
    print("Fallback (venv):")
    print("  python3 -m venv .venv")
    if os.name == "nt":
        print(r"  .\.venv\Scripts\activate")
    else:
        print("  source .venv/bin/activate")
    print("  python -m pip install -U pip")
    print("  python -m pip install logwatch")


def main() -> None:
    """Run the log watcher service or handle setup/doctor commands."""
    from .config import get_settings

    _ensure_supported_python()
    settings = get_settings()
    port = settings.http_port
    host = os.environ.get("HOST", "0.0.0.0")

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "setup":
            _print_setup_banner(
                watcher=settings.watcher_name,
                provider=settings.provider_name,
                port=port,
                for_startup=False,
            )
            sys.exit(0)
        if subcommand == "doctor":
            _print_doctor()
            sys.exit(0)
        print(f"Unknown command: {subcommand}", file=sys.stderr)
        _print_help()
        sys.exit(2)

    import uvicorn

    _print_setup_banner(
        watcher=settings.watcher_name,
        provider=settings.provider_name,
        port=port,
        for_startup=True,
    )

    uvicorn.run(
        "logwatch.main:app",
        host=host,
        port=port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
