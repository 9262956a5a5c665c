"""Download API router: serves merged artifacts by token."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from sqlalchemy.orm import Session

from docbatch.db import get_session
from docbatch.deps import get_token_service
from docbatch.services.merger import content_type_for
from docbatch.services.tokens import TokenExpiredError, TokenNotFoundError, TokenService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{token}")
def download(
    token: str,
    db: Session = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
) -> Response:
    """Return the artifact bytes; the token itself is the credential."""
    try:
        output = tokens.resolve(token, db)
    except TokenNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except TokenExpiredError as exc:
        raise HTTPException(status_code=410, detail=str(exc)) from exc
    data = tokens.read(output)
    return Response(
        content=data,
        media_type=content_type_for(output.format),
        headers={"Content-Disposition": f'attachment; filename="{output.filename}"'},
    )
