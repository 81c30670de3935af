"""
Authentication endpoints and the owner directory used by lead assignment.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from leadflow.api.schemas.auth import AuthResponse, OwnerInfo, Token, UserLogin, UserResponse
from leadflow.core.security import (
    User,
    authenticate_user,
    create_access_token,
    get_current_user,
    load_owner_directory,
)
from leadflow.db.session import get_db

router = APIRouter(prefix="/auth", tags=["authentication"])


@router.post("/login", response_model=AuthResponse)
def login(credentials: UserLogin, db: Session = Depends(get_db)):
    """
    Login with email and password.

    Parameters:
    - email: User's email address
    - password: User's password

    Returns:
    - JWT access token
    - User information
    """
    user = authenticate_user(db, credentials.email, credentials.password)
    if not user:
        raise HTTPException(
            status_code=401,
            detail="Incorrect email or password"
        )

    access_token = create_access_token(data={"sub": user.email})
    return AuthResponse(
        success=True,
        token=Token(access_token=access_token),
        user=UserResponse.model_validate(user)
    )


@router.get("/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)


@router.get("/owners", response_model=List[OwnerInfo])
def list_owners(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Active users that leads can be assigned to."""
    return load_owner_directory(db)
