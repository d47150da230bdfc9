"""Invoice / delivery note (BL) reconciliation service package."""

__all__: list[str] = []
