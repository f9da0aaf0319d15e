"""GitLab webhook handlers."""

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Request, status
from redis.exceptions import ConnectionError as RedisConnectionError

from review_bot.config.settings import settings
from review_bot.exceptions import ReviewQueueFullError, WebhookValidationError
from review_bot.services.review_coordinator import ReviewRunCoordinator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhook", tags=["webhooks"])

MERGE_REQUEST_EVENT = "Merge Request Hook"
REVIEW_ACTIONS = {"open", "reopen", "update"}

coordinator = ReviewRunCoordinator(settings)


def validate_token(x_gitlab_token: str | None) -> None:
    """
    Validate the shared secret GitLab sends in ``X-Gitlab-Token``.

    Raises:
        HTTPException: If the token is missing or does not match
    """
    secret = settings.gitlab_webhook_secret
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )
    if not x_gitlab_token or not hmac.compare_digest(
        x_gitlab_token.encode("utf-8"), secret.encode("utf-8")
    ):
        logger.warning("Invalid or missing X-Gitlab-Token header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook token",
        )


def parse_merge_request_event(payload: Any) -> tuple[int, int, str | None, bool]:
    """Return ``(project_id, mr_iid, action, has_new_commits)``.

    Raises:
        WebhookValidationError: If the payload lacks the MR identifiers
    """
    if not isinstance(payload, dict):
        raise WebhookValidationError("Webhook payload is not a JSON object")
    attributes = payload.get("object_attributes") or {}
    project = payload.get("project") or {}
    if not isinstance(attributes, dict) or not isinstance(project, dict):
        raise WebhookValidationError("Malformed merge request payload")

    project_id = project.get("id") or attributes.get("target_project_id")
    mr_iid = attributes.get("iid")
    if project_id is None or mr_iid is None:
        raise WebhookValidationError("Merge request payload without project id or iid")
    try:
        project_id, mr_iid = int(project_id), int(mr_iid)
    except (TypeError, ValueError) as exc:
        raise WebhookValidationError(
            f"Non-numeric project id or iid: {project_id!r}, {mr_iid!r}"
        ) from exc

    action = attributes.get("action")
    has_new_commits = bool(attributes.get("oldrev"))
    return project_id, mr_iid, action, has_new_commits


@router.post("/gitlab")
async def gitlab_webhook(
    request: Request,
    x_gitlab_event: str | None = Header(None, alias="X-Gitlab-Event"),
    x_gitlab_token: str | None = Header(None, alias="X-Gitlab-Token"),
) -> dict[str, str | int | None]:
    """
    Handle GitLab webhook events.

    Merge request ``open``, ``reopen`` and ``update`` (with new commits)
    events schedule a review; everything else is acknowledged and ignored.
    """
    validate_token(x_gitlab_token)

    try:
        payload = await request.json()
    except ValueError as exc:
        logger.warning(f"Rejected webhook body: {exc}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON"
        ) from exc

    if x_gitlab_event != MERGE_REQUEST_EVENT:
        logger.info(f"Ignoring event type: {x_gitlab_event}")
        return {"message": f"Event {x_gitlab_event} not supported", "status": "ignored"}

    try:
        project_id, mr_iid, action, has_new_commits = parse_merge_request_event(payload)
    except WebhookValidationError as exc:
        logger.warning(f"Rejected webhook payload: {exc}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
        ) from exc

    logger.info(f"Received MR {action} event for {project_id}!{mr_iid}")

    if action not in REVIEW_ACTIONS or (action == "update" and not has_new_commits):
        logger.info(f"Ignoring MR {action} event for {project_id}!{mr_iid}")
        return {"message": f"Event {action} ignored", "status": "ignored"}

    try:
        job = coordinator.start(project_id, mr_iid)
    except ReviewQueueFullError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    except RedisConnectionError as exc:
        logger.exception(
            "Redis unavailable while enqueuing review job for %s!%s",
            project_id,
            mr_iid,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Queue backend unavailable",
        ) from exc

    if job is None:
        return {"message": "Reviews are disabled", "status": "disabled"}

    logger.info(f"Queued review for {project_id}!{mr_iid} (job {job.id})")
    return {
        "message": f"MR !{mr_iid} review queued",
        "status": "accepted",
        "job_id": job.id,
    }
