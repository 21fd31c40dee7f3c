"""CLI parameter definitions for az mcp."""

from azure.cli.core.commands.parameters import get_enum_type


def load_arguments(self, _):
    """Register CLI parameters for all commands."""

    # --- --json on the provider commands ---
    with self.argument_context("mcp provider") as c:
        c.argument(
            "json_output",
            options_list=["--json", "-j"],
            help="Output machine-readable JSON instead of formatted display.",
            action="store_true",
            default=False,
        )
        c.argument(
            "name",
            options_list=["--name", "-n"],
            help="Provider id (e.g. mcp.storage) or short name (e.g. storage).",
        )

    # --- az mcp server start ---
    with self.argument_context("mcp server start") as c:
        c.argument(
            "mode",
            arg_type=get_enum_type(["proxy", "flatten"]),
            help="proxy: expose only the 'azure' tool. flatten: also publish learned provider "
                 "commands as top-level tools. Defaults to the 'server.mode' setting.",
        )

    # --- az mcp provider call ---
    with self.argument_context("mcp provider call") as c:
        c.argument("command", options_list=["--command", "-c"], help="Command exposed by the provider.")
        c.argument(
            "parameters",
            options_list=["--parameters", "-p"],
            help="Command arguments as a JSON object, e.g. '{\"account\": \"mystorage\"}'.",
        )

    # --- az mcp config get / set ---
    with self.argument_context("mcp config get") as c:
        c.argument("key", help="Dot-separated configuration key (e.g. server.mode).")

    with self.argument_context("mcp config set") as c:
        c.argument("key", help="Dot-separated configuration key (e.g. server.mode).")
        c.argument("value", help="Value to set. Lists accept comma-separated values.")
