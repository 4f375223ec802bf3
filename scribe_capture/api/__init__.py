"""
API orchestration boundary for live capture.

Design intent:
- Expose thin, typed endpoints for capture commands and transcript reads.
- Keep failure modes predictable: every capture error maps to one status code.
"""
