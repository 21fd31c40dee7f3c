"""Help text for az mcp commands."""

from knack.help_files import helps

helps["mcp"] = """
type: group
short-summary: Route MCP tool calls to Azure tool providers.
long-summary: |
    The az mcp extension runs a Model Context Protocol server that exposes a
    single "azure" tool. Behind it, tool providers published as azd
    extensions (tagged azure and mcp) and remote MCP endpoints from the
    bundled manifest are discovered on demand, installed or upgraded when
    needed, started lazily and kept running for the life of the server.

    Callers learn the available providers, then a provider's commands, then
    invoke a command with parameters.
"""

helps["mcp server"] = """
type: group
short-summary: Run the router as an MCP server.
"""

helps["mcp server start"] = """
type: command
short-summary: Serve the router over stdio.
long-summary: |
    Reads newline-delimited JSON-RPC from stdin and writes responses to
    stdout. Logs go to stderr. Register this command as a stdio MCP server
    in your MCP client.

    When the client supports sampling, free-text intent is resolved to a
    provider and command automatically.
examples:
    - name: Start the router
      text: az mcp server start
    - name: Also publish learned provider commands as top-level tools
      text: az mcp server start --mode flatten
"""

helps["mcp provider"] = """
type: group
short-summary: Inspect and call tool providers directly.
"""

helps["mcp provider list"] = """
type: command
short-summary: List discovered tool providers.
examples:
    - name: List providers
      text: az mcp provider list
    - name: List providers as JSON
      text: az mcp provider list --json
"""

helps["mcp provider show"] = """
type: command
short-summary: Show the commands a provider exposes.
long-summary: |
    Installs, upgrades and starts the provider if needed, then lists its
    commands with their parameter schemas.
examples:
    - name: Show the storage provider's commands
      text: az mcp provider show --name storage
"""

helps["mcp provider call"] = """
type: command
short-summary: Invoke a provider command.
examples:
    - name: List storage containers
      text: az mcp provider call --name storage --command list-containers --parameters '{"account": "mystorage"}'
"""

helps["mcp config"] = """
type: group
short-summary: Manage router configuration (mcp.yaml).
long-summary: |
    Configuration lives in ~/.azure/mcp.yaml unless AZURE_MCP_CONFIG points
    elsewhere. A missing file means defaults.
"""

helps["mcp config show"] = """
type: command
short-summary: Display the effective configuration.
"""

helps["mcp config get"] = """
type: command
short-summary: Get a configuration value.
examples:
    - name: Get the server mode
      text: az mcp config get --key server.mode
"""

helps["mcp config set"] = """
type: command
short-summary: Set a configuration value.
examples:
    - name: Publish learned commands as top-level tools
      text: az mcp config set --key server.mode --value flatten
    - name: Give up on provider calls after two minutes
      text: az mcp config set --key client.timeout --value 120
    - name: Discover providers with a different tag set
      text: az mcp config set --key extensions.tags --value azure,mcp,preview
"""
