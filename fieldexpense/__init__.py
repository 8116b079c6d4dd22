"""Field Expense Liquidation System.

Captures paper receipts from a live camera feed or uploaded images,
turns them into verified ledger entries with an AI vision collaborator,
and assembles the ledger into a signed, paginated PDF liquidation report
with embedded proof images.
"""
