"""
Applications that run inside the TEE.

- key_manager: first phase, generates the session key and seals the credential
- oracle: second phase, recovers the credential and calls the upstream provider

Both always finish by writing a structured output record, because the
coordinator polls for that artifact.
"""
