from fastapi import APIRouter, Depends, HTTPException, Header, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from app.db.database import get_db
from app.services.auth.jwt_handler import get_current_user
from app.services.chat_service import get_messages, mark_as_read
from app.schemas.chat_schema import MessageOut, ReadReceiptOut

router = APIRouter(prefix="/chat", tags=["chat"])

def get_current_user_id(access_token: str = Header(..., description="Access token (without Bearer)")):
    """Extract current user ID from JWT token"""
    user_id = get_current_user(access_token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


@router.get("/trips/{trip_id}/messages", response_model=List[MessageOut])
def get_trip_messages(
    trip_id: str,
    limit: Optional[int] = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Get trip chat history, oldest first"""
    return get_messages(db, trip_id, limit=limit, offset=offset)


@router.post("/messages/{message_id}/read", response_model=ReadReceiptOut)
def mark_message_read(
    message_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Mark a message as read by the current user"""
    read_by = mark_as_read(db, message_id, user_id)
    if read_by is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return ReadReceiptOut(message_id=message_id, read_by=read_by)
