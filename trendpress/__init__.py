"""trendpress: multi-tenant social trend ingestion, synthesis and publishing."""

__version__ = "0.1.0"
