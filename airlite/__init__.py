"""airlite-patcher: incremental patch builder for packaged JS bundles."""

__version__ = "0.3.0"
