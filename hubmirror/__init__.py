"""
hubmirror package.

Local mirror of model registry metadata:
- Record model and JSON field codec
- Merge engine for listing, detail and file-tree payloads
- SQLite-backed store with registry-style queries
- Sync driver and registry HTTP client
"""

__version__ = "0.1.0"
