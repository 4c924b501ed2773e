"""BSC Transfer Indexer - resumable BEP-20 Transfer event indexing."""

__version__ = "0.1.0"
