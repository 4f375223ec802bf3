"""
Scribe capture package.

Design intent:
- Own live consultation audio capture and backend orchestration.
- Hand a single ordered, speaker-attributed transcript to downstream consumers.
"""
