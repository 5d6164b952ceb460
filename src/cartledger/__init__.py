"""
cartledger: store files as fixed-size records on an append-only ledger.

  - codec: identity strings and the 64-byte CART / DATA / CENT records
  - chunker: split / reassemble / verify
  - catalog: app id allocation and title lookup over the catalog identity
  - upload / sync: the two pipelines
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
