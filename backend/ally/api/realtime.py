"""HTTP view onto the in-memory presence registry."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from ally.domain.realtime.container import RealtimeContainer
from ally.infra import jwt as jwt_helper

router = APIRouter(prefix="/realtime", tags=["realtime"])

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(
	credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
	if credentials is None or not credentials.credentials:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_token")
	try:
		payload = jwt_helper.decode_access(credentials.credentials)
	except InvalidTokenError:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from None
	return str(payload["sub"])


def get_realtime(request: Request) -> RealtimeContainer:
	container = getattr(request.app.state, "realtime", None)
	if container is None:
		raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="realtime_unavailable")
	return container


@router.get("/presence/{user_id}")
async def get_presence(
	user_id: str,
	_: str = Depends(get_current_user_id),
	realtime: RealtimeContainer = Depends(get_realtime),
) -> Dict[str, Any]:
	return realtime.service.presence_of(user_id)
