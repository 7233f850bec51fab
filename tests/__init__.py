"""
MCP Orchestrator Test Suite

Structure:
- unit/: state machine, supervisor, server manager, registry, config, storage,
  transports, settings, CLI, orchestrator wiring and the HTTP API
- oauth/: PKCE, discovery and the token manager
- fakes.py: transport doubles shared by both
"""
