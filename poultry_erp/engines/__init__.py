"""
Engines of the ERP core: numbering, bulk parsing, ledger and auto-save.
"""
