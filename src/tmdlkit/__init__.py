"""tmdlkit: TMDL semantic-model text engine with MCP and REST tool surfaces."""

__version__ = "0.3.0"
