from typing import Annotated
from fastapi import APIRouter, HTTPException, status, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from firmassist.core import schemas, models
from firmassist.core.database import get_db
from firmassist.core.security import verify_password, create_access_token

router = APIRouter(prefix="/profile", tags=["Authentication"])

db_dep = Annotated[AsyncSession, Depends(get_db)]


@router.post("/login", status_code=status.HTTP_200_OK)
async def verify_user(user_credentials: schemas.UserLogin, db: db_dep):
    query = select(models.User).where(models.User.email == user_credentials.email)
    result = await db.execute(query)
    db_user = result.scalars().first()

    # Same answer for unknown email and wrong password
    if not db_user or not verify_password(user_credentials.password, db_user.password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials"
        )

    if not db_user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated"
        )

    token = create_access_token(
        {"user_id": db_user.id, "role": db_user.role, "firm_id": db_user.firm_id}
    )
    return {"access_token": token, "token_type": "bearer"}
