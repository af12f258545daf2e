"""Observability setup.

Logfire for tracing and logging. Spans and logs only leave the process
when a Logfire token is configured; otherwise they go to the console
(in debug mode) or nowhere.
"""

import logfire


def configure(service_name: str = "departure_feed", debug: bool = False) -> None:
    """Configure Logfire for this process.

    Args:
        service_name: Name to identify this service in traces.
        debug: If True, also log to console, down to debug level.
    """
    logfire.configure(
        service_name=service_name,
        send_to_logfire="if-token-present",
        console=logfire.ConsoleOptions(min_log_level="debug") if debug else False,
    )
