"""
Transcript-side building blocks for live capture.

Design intent:
- Merge partial/final backend output into one ordered transcript.
- Keep speaker attribution stable within a session.
- Decide when a terminated backend is restarted and when the session ends.
"""
