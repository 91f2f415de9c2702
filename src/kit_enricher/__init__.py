"""
kit-enricher: Store product key enrichment and listing snapshots.

Resolves store-side kit keys (M12345, N678) to LEGO set metadata from the
Rebrickable registry under a local cache, daily quota and retry policy, and
keeps a locally searchable snapshot of the store's brick-kit listing.
"""

__version__ = "0.1.0"
