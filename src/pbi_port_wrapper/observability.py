"""Observability setup - Logfire configuration.

We use logfire.info/warn/error/debug directly instead of Python's logging
module, so relay spans and the log lines emitted inside them stay together.
"""

import logfire


def configure(service_name: str = "pbi_port_wrapper", debug: bool = False) -> None:
    """Configure Logfire once per process.

    Args:
        service_name: Service name attached to every span and log.
        debug: Echo logs to the console as well. Off by default.
    """
    logfire.configure(
        service_name=service_name,
        send_to_logfire="if-token-present",
        console=None if debug else False,
    )
