"""
inkdoodle - local project storage and remote sync for a desktop writing organizer

Projects live on disk as JSON files (one directory per project, one file per
chapter, note, reference or lore item) and are mirrored to a relational store
by the reconciliation layer in `inkdoodle.Sync`.
"""

__version__ = "0.1.0"
