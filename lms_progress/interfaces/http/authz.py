from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from sqlalchemy.orm import Session
from ...config import settings
from ...domain.errors import ProgressError
from ...infrastructure.db import get_db
from ...infrastructure.repositories import check_course_access

bearer = HTTPBearer()

def get_claims(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> dict:
    try:
        payload = jwt.decode(creds.credentials, settings.SECRET_KEY,
                             algorithms=[settings.JWT_ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

def get_student_id(claims: dict = Depends(get_claims)) -> str:
    sub = claims.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return sub

def require_admin(claims: dict = Depends(get_claims)) -> dict:
    if claims.get("role", "student") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin required")
    return claims

def http_error(e: ProgressError, status_code: int) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": e.code, "message": e.message})

def require_course_access(course_id: str, student_id: str, db: Session) -> None:
    try:
        check_course_access(db, student_id, course_id)
    except ProgressError as e:
        raise http_error(e, status.HTTP_403_FORBIDDEN)
