"""
Admission webhooks for VM Operator.

Validators are plain objects keyed by resource kind (see registry.py);
server.py exposes them over HTTP as AdmissionReview v1 endpoints.
"""
