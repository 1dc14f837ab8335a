"""Runner callback routes.

Called from inside the GitHub Actions workflow, never by browsers. These
paths are exempt from AuthMiddleware; each route authenticates the runner
through a callback dependency instead:
- attest, finalize: GitHub OIDC token only
- update: GitHub OIDC token or the combined token

For update and finalize the session always comes from the verified token,
never from the request body.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from quire.api.deps import get_session_service, get_token_issuer
from quire.auth.callbacks import (
    require_ci_context,
    require_oidc_context,
    resolve_callback_session_id,
)
from quire.auth.combined_token import CombinedTokenIssuer
from quire.auth.contexts import CallbackAuthContext, CiAuthContext
from quire.responses import success_response
from quire.schemas.publish import (
    AttestRunnerRequest,
    FinalizePublishRequest,
    UpdatePublishRequest,
)
from quire.services import publish_flow
from quire.services.publish_sessions import PublishSessionService

router = APIRouter()


@router.post("/publish/sessions/attest")
def attest_runner(
    body: AttestRunnerRequest,
    ctx: Annotated[CiAuthContext, Depends(require_oidc_context)],
    service: Annotated[PublishSessionService, Depends(get_session_service)],
    issuer: Annotated[CombinedTokenIssuer, Depends(get_token_issuer)],
) -> dict:
    """Bind the calling GitHub run to its session (pending -> runner-attested).

    The nonce is the one the workflow received as a dispatch input.
    """
    result = publish_flow.attest_runner(service, issuer, ctx, body.session_id, body.nonce)
    return success_response(result)


@router.post("/publish/sessions/update")
def update_publish_session(
    body: UpdatePublishRequest,
    ctx: Annotated[CallbackAuthContext, Depends(require_ci_context)],
    service: Annotated[PublishSessionService, Depends(get_session_service)],
) -> dict:
    """Report progress, or a terminal status with its result/error."""
    session_id = resolve_callback_session_id(ctx, service.store)
    return success_response(publish_flow.apply_update(service, session_id, body))


@router.post("/publish/sessions/finalize")
def finalize_publish_session(
    body: FinalizePublishRequest,
    ctx: Annotated[CiAuthContext, Depends(require_oidc_context)],
    service: Annotated[PublishSessionService, Depends(get_session_service)],
) -> dict:
    session_id = resolve_callback_session_id(ctx, service.store)
    return success_response(publish_flow.finalize(service, session_id, body))
