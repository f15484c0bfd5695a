"""
Guardrails around specialist dispatch: input validation before, response
validation after.
"""
