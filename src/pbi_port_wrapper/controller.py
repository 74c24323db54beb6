"""PortWrapper - discovery, settings and the XMLA proxy wired together.

This is everything a front-end needs without the front-end itself:
- refresh() finds engines and re-selects the one used last time
- start() validates the choice, starts the proxy, remembers the settings
- shutdown() stops the proxy and saves the settings
"""

from pathlib import Path

import logfire

from .config import ConfigurationManager, ProxyConfiguration
from .discovery import DatabaseResolver, PowerBIInstance, detect_instances
from .proxy import XmlaProxy

MIN_FIXED_PORT = 1024
MAX_FIXED_PORT = 65535


class PortWrapper:
    """Long-lived controller behind a UI.

    Usage:
        wrapper = PortWrapper()
        wrapper.refresh()
        await wrapper.start()
        print(wrapper.connection_string)
        ...
        wrapper.shutdown()
    """

    def __init__(
        self,
        proxy: XmlaProxy | None = None,
        config_manager: ConfigurationManager | None = None,
        workspaces_dir: Path | None = None,
        resolve_database: DatabaseResolver | None = None,
    ):
        self.proxy = proxy or XmlaProxy()
        self.config_manager = config_manager or ConfigurationManager()
        self.workspaces_dir = workspaces_dir
        self.resolve_database = resolve_database

        self.config: ProxyConfiguration = self.config_manager.load()
        self.instances: list[PowerBIInstance] = []
        self.selected: PowerBIInstance | None = None

    @property
    def connection_string(self) -> str:
        """What clients should use to reach the model through us."""
        return f"Data Source=localhost:{self.config.fixed_port};Initial Catalog=PowerBI"

    def refresh(self) -> list[PowerBIInstance]:
        """Rescan for engines. Keeps last session's choice if it's still around."""
        self.instances = detect_instances(self.workspaces_dir, self.resolve_database)

        self.selected = None
        if self.config.last_selected_instance:
            self.selected = next(
                (i for i in self.instances if i.workspace_id == self.config.last_selected_instance),
                None,
            )
        if self.selected is None and self.instances:
            self.selected = self.instances[0]

        return self.instances

    def select(self, instance: PowerBIInstance) -> None:
        self.selected = instance

    async def start(
        self,
        instance: PowerBIInstance | None = None,
        fixed_port: int | None = None,
        allow_remote: bool | None = None,
    ) -> None:
        """Start the XMLA proxy for ``instance`` (or the selected one).

        Raises:
            ValueError: nothing selected, no database name, or bad port
            AlreadyRunningError / StartupError: from the proxy
        """
        instance = instance or self.selected
        if instance is None:
            raise ValueError("No Power BI Desktop instance selected")
        if not instance.database_name:
            raise ValueError(
                f"Could not detect the database name for {instance.file_name}; refresh and try again"
            )

        port = self.config.fixed_port if fixed_port is None else fixed_port
        if not MIN_FIXED_PORT <= port <= MAX_FIXED_PORT:
            raise ValueError(f"Port must be between {MIN_FIXED_PORT} and {MAX_FIXED_PORT}, got {port}")

        remote = self.config.allow_network_access if allow_remote is None else allow_remote

        self.proxy.events.log(f"Starting proxy for {instance.file_name}...")
        self.proxy.events.log(f"Target database: {instance.database_name}")
        await self.proxy.start(port, instance.port, instance.database_name, remote)

        self.selected = instance
        self.config.fixed_port = port
        self.config.allow_network_access = remote
        self.config.last_selected_instance = instance.workspace_id
        self.save_config()

    def stop(self) -> None:
        self.proxy.stop()

    def shutdown(self) -> None:
        """Stop the proxy if it's running and persist the settings."""
        if self.proxy.is_running:
            self.proxy.stop()
        self.save_config()

    def save_config(self) -> None:
        try:
            self.config_manager.save(self.config)
        except OSError as e:
            # Proxy keeps running; only the settings are lost
            logfire.warning(f"Configuration not saved: {e}")
