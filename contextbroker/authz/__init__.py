"""Authorization / policy layer (env/ConfigMap driven).

This package is intentionally lightweight so admins can control:
- how long live approvals wait before expiring
- retrieval caps (similarity threshold, max fragments, retry budget)
- redaction settings for fragments leaving a participant's context
"""
