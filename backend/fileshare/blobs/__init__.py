"""Blob storage module.

Uploaded file bytes are stored on the local filesystem under generated storage
keys, independent of any room. Writes are streamed and committed atomically;
reads are streamed back in chunks. Only a room's FileRecord establishes which
room a blob belongs to.
"""
