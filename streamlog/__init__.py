"""Segment, index and offset files, segment reading and writing, retention clean-up and generation state for a streaming broker."""

__version__ = "0.1.0"

__all__ = [
    "models",
    "offsets",
    "index_file",
    "file_structure",
    "cleaner",
    "datalog",
    "segment_writer",
    "segment_reader",
    "generation_state",
]