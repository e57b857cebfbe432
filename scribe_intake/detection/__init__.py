"""
Transcript inspection boundary.

Design intent:
- Catch syntactically valid but semantically wrong transcripts.
- Keep phrase/pattern lists as injectable configuration, not inline literals.
"""
