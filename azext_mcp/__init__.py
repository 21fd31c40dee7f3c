"""Azure CLI Extension: az mcp -- capability router for Azure MCP tool providers."""

try:
    from azure.cli.core import AzCommandsLoader
except ImportError:
    # Azure CLI not installed -- the router, server and providers modules
    # stay importable on their own.
    AzCommandsLoader = None  # type: ignore[assignment,misc]

if AzCommandsLoader is not None:
    from azext_mcp._help import helps  # type: ignore[attr-defined]  # noqa: F401

    class McpCommandsLoader(AzCommandsLoader):
        """Command loader for az mcp extension."""

        def __init__(self, cli_ctx=None):
            from azure.cli.core.commands import CliCommandType

            mcp_custom = CliCommandType(operations_tmpl="azext_mcp.custom#{}")
            super().__init__(cli_ctx=cli_ctx, custom_command_type=mcp_custom)

        def load_command_table(self, args):
            from azext_mcp.commands import load_command_table

            load_command_table(self, args)
            return self.command_table

        def load_arguments(self, command):
            from azext_mcp._params import load_arguments

            load_arguments(self, command)

    COMMAND_LOADER_CLS = McpCommandsLoader
