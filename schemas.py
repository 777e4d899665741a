"""
Database Schemas for Rent2Reuse

Each Pydantic model describes the documents of one collection. Python
attributes are snake_case; stored documents use the camelCase aliases, e.g.
RentRequest.requester_id -> "requesterId" in the "rentRequests" collection.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ItemStatus = Literal["Available", "Reserved", "Rented"]
RequestStatus = Literal["pending", "accepted", "approved", "rejected", "cancelled", "completed"]
MessageType = Literal["message", "rentRequest", "requestStatus", "conditionalAssessment"]
OverallCondition = Literal["excellent", "good", "fair", "poor"]
AssessmentType = Literal["pickup", "return"]
IdType = Literal["philsys", "drivers", "student"]
AccountStatus = Literal["active", "suspended"]

ACTIVE_REQUEST_STATUSES = ("pending", "accepted", "approved")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Location(CamelModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None


class CurrentPlan(CamelModel):
    plan_id: str
    plan_type: str
    rent_limit: int = Field(..., ge=0)
    list_limit: int = Field(..., ge=0)
    rent_used: int = Field(0, ge=0)
    list_used: int = Field(0, ge=0)
    status: str = "active"
    subscription_id: Optional[str] = None
    updated_at: Optional[datetime] = None


class IdVerification(CamelModel):
    id_image: str
    id_number: str = Field(..., min_length=1)
    id_type: IdType
    updated_at: Optional[datetime] = None


class User(CamelModel):
    email: str
    firstname: Optional[str] = None
    middlename: Optional[str] = None
    lastname: Optional[str] = None
    email_verified: bool = False
    profile_image: Optional[str] = None
    contact_number: Optional[str] = None
    birthday: Optional[str] = None
    location: Optional[Location] = None
    id_verified: Union[bool, IdVerification] = False
    id_document_url: Optional[str] = None
    bio: Optional[str] = None
    current_plan: Optional[CurrentPlan] = None
    account_status: AccountStatus = "active"
    average_rating: float = 0
    total_ratings: int = 0
    rating_sum: int = 0
    rating_count: Dict[str, int] = Field(default_factory=dict)


class DeviceInfo(CamelModel):
    platform: str = "unknown"
    device_name: Optional[str] = None


class Session(CamelModel):
    session_id: str
    user_id: str
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    is_active: bool = True
    created_at: datetime
    last_active: datetime
    terminated_at: Optional[datetime] = None
    termination_reason: Optional[str] = None


class Owner(CamelModel):
    id: str
    fullname: str = ""


class Item(CamelModel):
    item_name: str = Field(..., min_length=1)
    item_desc: str = ""
    item_price: float = Field(..., ge=0, description="Price per day in the display currency")
    item_condition: str = "Good"
    item_location: Optional[Location] = None
    category: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    owner: Owner
    item_status: ItemStatus = "Available"


class RentRequest(CamelModel):
    item_id: str
    item_name: str
    item_image: str = ""
    requester_id: str
    requester_name: str = ""
    owner_id: str
    owner_name: str = ""
    status: RequestStatus = "pending"
    start_date: datetime
    end_date: datetime
    pickup_time: int = Field(..., ge=0, lt=24 * 60, description="Minutes after midnight")
    message: str = ""
    rental_days: int = Field(..., ge=1)
    total_price: float = Field(..., ge=0)
    chat_id: Optional[str] = None


class Chat(CamelModel):
    participants: List[str]
    item_id: Optional[str] = None
    requester_id: Optional[str] = None
    owner_id: Optional[str] = None
    rent_request_id: Optional[str] = None
    status: Optional[str] = None
    last_message: str = ""
    last_message_time: Optional[datetime] = None
    last_sender: Optional[str] = None
    unread_counts: Dict[str, int] = Field(default_factory=dict)


class Assessment(CamelModel):
    overall_condition: OverallCondition
    scratches: bool = False
    dents: bool = False
    stains: bool = False
    tears: bool = False
    damage_found: bool = False
    functioning_issues: bool = False
    other_damage: str = ""
    notes: str = ""
    photos: List[str] = Field(default_factory=list)


class Message(CamelModel):
    chat_id: str
    sender_id: str
    text: str = ""
    type: MessageType = "message"
    status: Optional[str] = None
    rent_request_id: Optional[str] = None
    assessment_type: Optional[AssessmentType] = None
    assessment: Optional[Assessment] = None
    read: bool = False
    read_at: Optional[datetime] = None


class Plan(CamelModel):
    plan_type: str
    price: float = Field(..., ge=0)
    duration: Literal["monthly", "quarterly", "semi-annual", "annual"] = "monthly"
    rent: int = Field(..., ge=0)
    list: int = Field(..., ge=0)
    description: Optional[str] = None


class Subscription(CamelModel):
    user_id: str
    plan_id: str
    plan_type: str
    start_date: datetime
    end_date: datetime
    status: Literal["active", "inactive"] = "active"
    transaction_id: str


class Transaction(CamelModel):
    transaction_id: str
    user_id: str
    subscription_id: str
    plan_id: str
    paypal_order_id: str
    amount: float
    currency: str
    settlement_amount: Optional[str] = None
    settlement_currency: Optional[str] = None
    payment_method: str = "paypal"
    status: str = "success"
    plan_details: Dict[str, Any] = Field(default_factory=dict)


class Notification(CamelModel):
    user_id: str
    type: str
    title: str
    message: str
    is_read: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)
