"""
billspine - bill key lookup and reconciliation over a row store.

Packages:
    billspine.core  Index, cache, lookup and reconciliation primitives
    billspine.cli   ``billspine`` Typer application
"""

__version__ = "0.1.0"
