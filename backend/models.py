from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    CUSTOMER = "customer"
    ARTISAN = "artisan"
    DISTRIBUTOR = "distributor"
    ADMIN = "admin"
    SHIPPING_AGENT = "shipping_agent"
    SYSTEM = "system"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"

class WalletCreditStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"

class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"

class UserFlag(str, Enum):
    SCAM = "scam"
    FRAUD = "fraud"
    SUSPICIOUS = "suspicious"
    TRUSTED = "trusted"
    VIP = "vip"
    BANNED = "banned"
    WARNING = "warning"

# Adding one of these deactivates the account
DEACTIVATING_FLAGS = {UserFlag.SCAM, UserFlag.FRAUD, UserFlag.BANNED}

class AuditAction(str, Enum):
    # Orders
    ORDER_STATUS_OVERRIDDEN = "ORDER_STATUS_OVERRIDDEN"
    ORDER_AGENT_ASSIGNED = "ORDER_AGENT_ASSIGNED"
    PICKUP_BROADCAST = "PICKUP_BROADCAST"

    # Agents
    AGENT_CREATED = "AGENT_CREATED"
    AGENT_PROFILE_UPDATED = "AGENT_PROFILE_UPDATED"
    WALLET_CREDIT_APPLIED = "WALLET_CREDIT_APPLIED"
    PAYOUT_REQUESTED = "PAYOUT_REQUESTED"

    # Agent onboarding
    AGENT_APPLICATION_SUBMITTED = "AGENT_APPLICATION_SUBMITTED"
    AGENT_APPLICATION_REVIEWED = "AGENT_APPLICATION_REVIEWED"
    AGENT_APPLICATION_APPROVED = "AGENT_APPLICATION_APPROVED"
    AGENT_APPLICATION_REJECTED = "AGENT_APPLICATION_REJECTED"
    AGENT_DOCUMENT_VERIFIED = "AGENT_DOCUMENT_VERIFIED"

    # Platform
    ADMIN_ACTION = "ADMIN_ACTION"
    USER_FLAG_ADDED = "USER_FLAG_ADDED"
    USER_FLAG_REMOVED = "USER_FLAG_REMOVED"

    # Email
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"

class EmailTemplateAlias(str, Enum):
    ORDER_STATUS_UPDATE = "order-status-update"
    ORDER_SHIPPED = "order-shipped"
    ORDER_DELIVERED = "order-delivered"
    AGENT_APPROVED = "agent-approved"

class AgentApplicationStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    MORE_INFO_REQUIRED = "more_info_required"
    APPROVED = "approved"
    REJECTED = "rejected"

class AgentDocumentType(str, Enum):
    AADHAR_FRONT = "aadharFront"
    AADHAR_BACK = "aadharBack"
    PAN_CARD = "panCard"
    DRIVING_LICENSE_FRONT = "drivingLicenseFront"
    DRIVING_LICENSE_BACK = "drivingLicenseBack"
    VEHICLE_RC = "vehicleRC"
    VEHICLE_INSURANCE = "vehicleInsurance"
    PHOTO = "photo"
    BANK_PASSBOOK = "bankPassbook"

class VehicleType(str, Enum):
    BICYCLE = "bicycle"
    MOTORCYCLE = "motorcycle"
    SCOOTER = "scooter"
    AUTO_RICKSHAW = "auto_rickshaw"
    CAR = "car"
    VAN = "van"

# ============================================================================
# CALLER CONTEXT
# ============================================================================

class Actor(BaseModel):
    """Authenticated caller as seen by the services: who is acting and in which role."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    user_id: str
    role: UserRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id="system", role=UserRole.SYSTEM)

# ============================================================================
# ORDER MODELS
# ============================================================================

class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_by: Optional[str] = None
    updated_by_role: Optional[str] = None
    note: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

# ============================================================================
# USER MODELS
# ============================================================================

class UserFlagEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    flag: UserFlag
    reason: Optional[str] = None
    added_by: str
    added_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None

# ============================================================================
# AGENT MODELS
# ============================================================================

class ServiceArea(BaseModel):
    model_config = ConfigDict(extra="ignore")

    district: Optional[str] = None
    city: Optional[str] = None
    pin_codes: List[str] = Field(default_factory=list)

class BankDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_holder: str
    account_number: str
    ifsc_code: str
    bank_name: str

class PayoutRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    payout_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    amount: float
    status: PayoutStatus = PayoutStatus.PENDING
    transaction_id: Optional[str] = None
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None

class AgentProfile(BaseModel):
    """Shipping agent profile embedded in the user document."""
    model_config = ConfigDict(extra="ignore")

    is_active: bool = True
    commission_rate: float = 5.0
    base_delivery_fee: float = 50.0
    wallet_balance: float = 0.0
    total_earnings: float = 0.0
    total_deliveries: int = 0
    successful_deliveries: int = 0
    rating: float = 0.0
    total_ratings: int = 0
    service_areas: List[ServiceArea] = Field(default_factory=list)
    vehicle_type: Optional[str] = None
    vehicle_number: Optional[str] = None
    license_number: Optional[str] = None
    bank_details: Optional[BankDetails] = None
    payout_history: List[PayoutRecord] = Field(default_factory=list)
    credited_order_ids: List[str] = Field(default_factory=list)

class AgentApplication(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    application_id: str
    status: AgentApplicationStatus = AgentApplicationStatus.PENDING
    personal_info: Dict[str, Any]
    address: Dict[str, Any] = Field(default_factory=dict)
    vehicle_info: Dict[str, Any] = Field(default_factory=dict)
    service_areas: List[ServiceArea] = Field(default_factory=list)
    bank_details: Optional[BankDetails] = None
    documents: Dict[str, Any] = Field(default_factory=dict)
    emergency_contact: Optional[Dict[str, Any]] = None
    availability: Optional[Dict[str, Any]] = None
    experience: Optional[Dict[str, Any]] = None
    review_notes: List[Dict[str, Any]] = Field(default_factory=list)
    submission_meta: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

# ============================================================================
# AUDIT & MESSAGING
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class MessageLog(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    postmark_message_id: Optional[str] = None
    order_id: Optional[str] = None
    recipient: EmailStr
    template_alias: EmailTemplateAlias
    subject: str
    status: str = "queued"
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class NotificationOutboxItem(BaseModel):
    """Pending notification; the outbox worker delivers it."""
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    template_key: str
    order_id: Optional[str] = None
    recipient: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    status: NotificationStatus = NotificationStatus.PENDING
    attempt_count: int = 0
    last_error: Optional[str] = None
    next_run_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sent_at: Optional[datetime] = None
