"""Command table registration for az mcp."""


def load_command_table(self, _):
    """Register all mcp commands."""

    with self.command_group("mcp server", is_preview=True) as g:
        g.custom_command("start", "mcp_server_start")

    with self.command_group("mcp provider", is_preview=True) as g:
        g.custom_command("list", "mcp_provider_list")
        g.custom_command("show", "mcp_provider_show")
        g.custom_command("call", "mcp_provider_call")

    with self.command_group("mcp config", is_preview=True) as g:
        g.custom_command("show", "mcp_config_show")
        g.custom_command("get", "mcp_config_get")
        g.custom_command("set", "mcp_config_set")
