from datetime import datetime
from typing import Optional, List, Dict, Any
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, EmailStr


# =========================
# Enums
# =========================
class UserRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    EMPLOYEE = "employee"
    CLIENT = "client"


class UsageWindow(str, Enum):
    DAYS_7 = "7days"
    DAYS_30 = "30days"
    DAYS_90 = "90days"
    YEAR = "year"


# =========================
# USER
# =========================
class UserBase(BaseModel):
    email: EmailStr
    full_name: str = ""
    role: UserRole = UserRole.EMPLOYEE


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserResponse(UserBase):
    id: int
    firm_id: int
    department: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# =========================
# AI ASSISTANT
# =========================
class ChatRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=8000)
    # False keeps the run private: history is neither read nor written
    continuity: bool = True


class ChatResponse(BaseModel):
    response: str


class HistoryItem(BaseModel):
    sender: str  # "user" / "ai"
    text: str
    created_at: Optional[datetime] = None


class HistoryResponse(BaseModel):
    success: bool = True
    history: List[HistoryItem] = []


class SummaryResponse(BaseModel):
    success: bool = True
    summary: str
    timestamp: datetime


class AIStatusResponse(BaseModel):
    configured: bool
    message: str


class UsageSummary(BaseModel):
    total_queries: int
    total_responses: int
    failed_queries: int
    timed_out_queries: int
    cancelled_queries: int
    iteration_exhausted_queries: int
    success_rate: float
    average_response_time: float
    time_range: UsageWindow
    start_date: datetime
    end_date: datetime


class UsageReportResponse(BaseModel):
    summary: UsageSummary
    top_queries: List[Dict[str, Any]] = []
    usage_by_role: List[Dict[str, Any]] = []
    usage_over_time: List[Dict[str, Any]] = []
    top_users: List[Dict[str, Any]] = []
    query_types: Dict[str, int] = {}
    top_tools: List[Dict[str, Any]] = []
