"""
scribe_intake package.

Design intent:
- Rebuild browser-chunked recordings server-side with bounded memory.
- Refuse to transcribe anything whose bytes cannot be proven intact.
- Keep garbage transcripts (filler, loops) away from note generation.
"""
