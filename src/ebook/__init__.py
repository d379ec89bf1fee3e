"""Ebook entity: schemas, status state machine, record store, and the
generation/rendering adapters the pipeline stages call."""
