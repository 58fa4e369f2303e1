"""
CLI configuration.

Module-level settings filled in by the root command callback from options
or ``FCSAAS_HOST`` / ``FCSAAS_PORT``.
"""

HOST_ADDRESS: str = "127.0.0.1"
HOST_PORT: int = 8080
OUTPUT_FORMAT: str = "table"  # table | json
