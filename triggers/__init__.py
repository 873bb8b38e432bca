"""
triggers — polling trigger detection.

Registrations map workflows to the credential they poll with; the
polling engine turns provider changes into workflow executions.
"""
