from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from coderunner.core.security import decode_token
from coderunner.runtime import ExecutionRuntime

bearer = HTTPBearer(auto_error=False)


def get_runtime(request: Request) -> ExecutionRuntime:
    return request.app.state.runtime


async def get_client_identity(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> str:
    """Quota key: the token subject when a token is sent, else the peer address."""
    if creds:
        sub = decode_token(creds.credentials)
        if not sub:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token"
            )
        return f"user:{sub}"
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"
