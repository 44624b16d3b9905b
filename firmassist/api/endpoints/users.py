from typing import Annotated
from fastapi import APIRouter, Depends

from firmassist.core import schemas, models
from firmassist.core.security import get_current_user

router = APIRouter(prefix="/profile", tags=["Users"])


# Who am I
@router.get("/me", response_model=schemas.UserResponse)
async def get_me(current_user: Annotated[models.User, Depends(get_current_user)]):
    return current_user
