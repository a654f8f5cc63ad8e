"""
Tenant context package.

Resolves which tenant a request operates in and carries the cancellation
token used by resolution and evaluation.
"""
