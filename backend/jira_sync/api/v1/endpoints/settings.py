"""Jira connection settings."""

from typing import Annotated
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from jira_sync.auth import get_current_operator
from jira_sync.connectors.jira_connector import JiraConnector
from jira_sync.database import get_db
from jira_sync.exceptions import PreconditionError
from jira_sync.models.jira_setting import JiraSetting
from jira_sync.schemas.auth import Operator
from jira_sync.schemas.settings import ConnectionTestResult, JiraSettingsResponse, JiraSettingsUpdate
from jira_sync.services.sync_service import load_jira_config
from jira_sync.utils.encrypt import encrypt_data

log = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=JiraSettingsResponse)
async def get_settings(
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    stored = db.query(JiraSetting).first()
    if stored is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Jira settings are not configured")
    return JiraSettingsResponse(
        id=stored.id,
        jira_host=stored.jira_host,
        jira_email=stored.jira_email,
        api_version=stored.api_version,
        project_keys=stored.project_keys or [],
        created_at=stored.created_at,
        updated_at=stored.updated_at,
    )


@router.put("/", response_model=JiraSettingsResponse)
async def update_settings(
    update: JiraSettingsUpdate,
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    """Create or replace the stored settings; the API token is encrypted at rest."""
    stored = db.query(JiraSetting).first()
    if stored is None and not update.api_token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="An API token is required")

    try:
        encrypted_token = encrypt_data(update.api_token) if update.api_token else None
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    if stored is None:
        stored = JiraSetting(api_token=encrypted_token)
        db.add(stored)
    elif encrypted_token:
        stored.api_token = encrypted_token
    stored.jira_host = str(update.jira_host).rstrip("/")
    stored.jira_email = update.jira_email
    stored.api_version = update.api_version
    stored.project_keys = list(update.project_keys)
    db.commit()
    db.refresh(stored)
    log.info(f"Jira settings updated: host={stored.jira_host}, projects={stored.project_keys}")
    return await get_settings(db)


@router.post("/test", response_model=ConnectionTestResult)
async def test_settings(
    db: Session = Depends(get_db),
    current_operator: Annotated[Operator, Depends(get_current_operator)] = None
):
    """Check the stored credentials against Jira."""
    try:
        config, _ = load_jira_config(db)
    except PreconditionError as e:
        return ConnectionTestResult(valid=False, message=str(e))

    connector = JiraConnector(config)
    try:
        valid = await connector.test_connection()
    finally:
        await connector.close()
    message = "Connection successful" if valid else "Jira rejected the credentials or is unreachable"
    return ConnectionTestResult(valid=valid, message=message)
