"""Document intelligence pipeline: parse, chunk, enrich, index and query corpora."""

__version__ = "0.1.0"
