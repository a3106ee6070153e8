"""
Admission endpoints.

Each endpoint takes an AdmissionReview v1 document and returns one. The
validator runs in the threadpool under the configured latency budget; an
internal error or a timeout denies the request when the failure policy is
Fail and allows it (with a warning) when it is Ignore.
"""

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from vm_operator.webhooks.common import AdmissionRequest, AdmissionResponse, Validator, errored

logger = logging.getLogger(__name__)

router = APIRouter(tags=["validation"])

FAILURE_POLICY_FAIL = "Fail"


def on_failure(admission: AdmissionRequest, failure_policy: str, message: str) -> AdmissionResponse:
    if failure_policy == FAILURE_POLICY_FAIL:
        return errored(admission, 500, message)
    return AdmissionResponse(uid=admission.uid, allowed=True, warnings=[message])


async def admit(request: Request, validator: Validator) -> Dict[str, Any]:
    try:
        review = await request.json()
        admission = AdmissionRequest.from_review(review)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid AdmissionReview: {e}")

    state = request.app.state
    label = f"{admission.operation} {admission.kind.kind} {admission.namespace}/{admission.name}"
    try:
        response = await asyncio.wait_for(
            run_in_threadpool(validator.validate, admission),
            timeout=state.timeout,
        )
    except asyncio.TimeoutError:
        logger.error(f"Validation of {label} timed out after {state.timeout}s")
        response = on_failure(admission, state.failure_policy, f"validation timed out after {state.timeout}s")
    except Exception as e:
        logger.error(f"Validation of {label} failed: {e}", exc_info=True)
        response = on_failure(admission, state.failure_policy, f"internal error: {e}")

    if response.allowed:
        logger.debug(f"Allowed {label}")
    else:
        logger.info(f"Denied {label}: {response.reason}")
    return response.to_review()


@router.post("/default-validate--v1-persistentvolumeclaim")
async def validate_persistentvolumeclaim(request: Request):
    """Validate PersistentVolumeClaim create, update and delete."""
    return await admit(request, request.app.state.validators["PersistentVolumeClaim"])


@router.post("/default-validate-vmoperator-vmware-com-v1alpha1-virtualmachine")
async def validate_virtualmachine(request: Request):
    """Validate VirtualMachine create and update."""
    return await admit(request, request.app.state.validators["VirtualMachine"])


@router.post("/validate-storage-quota")
async def validate_storage_quota(request: Request):
    """Storage quota check, guarded by its match conditions."""
    return await admit(request, request.app.state.storage_quota)
