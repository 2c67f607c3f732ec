"""Run the llamarun management server: ``python -m llamarun``."""

from llamarun.runtime.logging import configure_runtime_logging
from llamarun.runtime.server import run_runtime_server
from llamarun.settings import RuntimeSettings


def main() -> None:
    settings = RuntimeSettings.from_env()
    configure_runtime_logging()
    run_runtime_server(settings)


if __name__ == "__main__":
    main()
