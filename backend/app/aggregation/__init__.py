"""Aggregation: turns raw tag value history into alarm and machine-state episodes.

Pieces:
  segmenter.py    pure run detection over ordered samples
  orchestrator.py per-job delete-and-replace with annotation carry-over
  repository.py   SQLAlchemy store used by the orchestrator
  efficiency.py   per-minute production series rebuilt after each run
"""
