"""Backend for the EMDR consultant training platform.

Exposes the notification service together with the auth, student,
session, document, progress and video routes served by `main.app`.
"""
