from sqlalchemy import Column, String, DateTime, JSON, Integer, Float, Boolean, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
import uuid
import os
from datetime import datetime

Base = declarative_base()

# Use String for UUID fields in SQLite, UUID for PostgreSQL
def get_uuid_column():
    """Return appropriate UUID column type based on database URL"""
    database_url = os.getenv("DATABASE_URL", "sqlite:///./workflow_automation.db")
    if "postgresql" in database_url:
        from sqlalchemy.dialects.postgresql import UUID
        return UUID(as_uuid=False)
    else:
        # Use String for SQLite
        return String(36)

def new_id() -> str:
    return str(uuid.uuid4())


# =======================
# TENANCY & AUTH
# =======================

class Organization(Base):
    """Multi-tenant boundary - nearly every row below is scoped to one of these"""
    __tablename__ = "organizations"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False)
    owner_id = Column(get_uuid_column(), ForeignKey("users.id"))
    subscription_status = Column(String(50), default="trial")  # trial, active, past_due, canceled
    trial_ends_at = Column(DateTime)
    stripe_customer_id = Column(String(255))
    settings = Column(JSON, default={})
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members = relationship("OrganizationMember", back_populates="organization")
    integrations = relationship("Integration", back_populates="organization")

class User(Base):
    """Application user; tenancy comes from OrganizationMember"""
    __tablename__ = "users"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255))
    is_active = Column(Boolean, default=True)
    last_login = Column(DateTime)
    login_attempts = Column(Integer, default=0)
    locked_until = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    memberships = relationship("OrganizationMember", back_populates="user")

class OrganizationMember(Base):
    __tablename__ = "organization_members"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(get_uuid_column(), ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(50), default="member")  # owner, administrator, manager, sales, member
    permissions = Column(JSON, default=[])
    status = Column(String(50), default="active")
    created_at = Column(DateTime, default=datetime.utcnow)

    organization = relationship("Organization", back_populates="members")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint('organization_id', 'user_id', name='unique_organization_member'),
    )

class AuditLog(Base):
    """Security audit log"""
    __tablename__ = "audit_logs"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"))
    user_id = Column(get_uuid_column(), ForeignKey("users.id"))
    action = Column(String(100), nullable=False)
    resource = Column(String(100))
    ip_address = Column(String(45))
    user_agent = Column(String(500))
    details = Column(JSON, default={})
    timestamp = Column(DateTime, default=datetime.utcnow)


# =======================
# GHL INTEGRATION
# =======================

class Integration(Base):
    """GoHighLevel OAuth + MCP credentials for an organization"""
    __tablename__ = "integrations"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    type = Column(String(50), default="gohighlevel")
    name = Column(String(255), default="GoHighLevel")
    location_id = Column(String(255), index=True)
    company_id = Column(String(255))
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime)
    scope = Column(Text)
    mcp_token = Column(Text)
    mcp_enabled = Column(Boolean, default=False)
    pipeline_completion_stages = Column(JSON, default={})  # {pipeline_id: [stage_id, ...]}
    is_active = Column(Boolean, default=True)
    last_sync_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    organization = relationship("Organization", back_populates="integrations")

class Contact(Base):
    __tablename__ = "contacts"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    integration_id = Column(get_uuid_column(), ForeignKey("integrations.id"))
    location_id = Column(String(255), nullable=False)
    contact_id = Column(String(255), nullable=False)
    first_name = Column(String(255))
    last_name = Column(String(255))
    full_name = Column(String(255))
    email = Column(String(255), index=True)
    phone = Column(String(50))
    company_name = Column(String(255))
    address1 = Column(String(255))
    city = Column(String(100))
    state = Column(String(100))
    postal_code = Column(String(20))
    country = Column(String(100))
    timezone = Column(String(100))
    website = Column(String(255))
    contact_type = Column(String(50))
    source = Column(String(255))
    assigned_to = Column(String(255))
    dnd = Column(Boolean, default=False)
    tags = Column(JSON, default=[])
    custom_fields = Column(JSON, default=[])
    ghl_created_at = Column(DateTime)
    ghl_updated_at = Column(DateTime)
    sync_status = Column(String(50), default="synced")
    last_synced_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('location_id', 'contact_id', name='unique_location_contact'),
    )

class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), index=True)
    integration_id = Column(get_uuid_column(), ForeignKey("integrations.id"))
    sync_type = Column(String(50))  # webhook, full_sync
    event_type = Column(String(100))
    status = Column(String(50))  # success, partial, failed
    records_processed = Column(Integer, default=0)
    error_message = Column(Text)
    details = Column(JSON, default={})
    created_at = Column(DateTime, default=datetime.utcnow)

class OpportunityCache(Base):
    """Local mirror of GHL opportunities plus locally tracked job costs"""
    __tablename__ = "opportunity_cache"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    integration_id = Column(get_uuid_column(), ForeignKey("integrations.id"))
    opportunity_id = Column(String(255), nullable=False, index=True)
    title = Column(String(500))
    contact_id = Column(String(255))
    contact_name = Column(String(255))
    pipeline_id = Column(String(255))
    pipeline_stage_id = Column(String(255))
    stage_name = Column(String(255))
    status = Column(String(50), default="open")
    monetary_value = Column(Float, default=0.0)
    assigned_to = Column(String(255), index=True)
    revenue = Column(Float)
    material_expenses = Column(Float, default=0.0)
    labor_expenses = Column(Float, default=0.0)
    other_expenses = Column(Float, default=0.0)
    total_expenses = Column(Float, default=0.0)
    synced_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('organization_id', 'opportunity_id', name='unique_org_opportunity'),
    )


# =======================
# SALES
# =======================

class Product(Base):
    __tablename__ = "products"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    integration_id = Column(get_uuid_column(), ForeignKey("integrations.id"))
    ghl_product_id = Column(String(255), index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    price = Column(Float, default=0.0)
    price_type = Column(String(50), default="one_time")  # one_time, recurring
    recurring_interval = Column(String(50))
    currency = Column(String(10), default="USD")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

class Property(Base):
    __tablename__ = "properties"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    nickname = Column(String(255))
    property_type = Column(String(50), default="residential")
    address1 = Column(String(255), nullable=False)
    address2 = Column(String(255))
    city = Column(String(100))
    state = Column(String(100))
    postal_code = Column(String(20))
    country = Column(String(100), default="USA")
    full_address = Column(String(500))
    tax_exempt = Column(Boolean, default=False)
    tax_exempt_reason = Column(String(255))
    custom_tax_rate = Column(Float)
    square_footage = Column(Integer)
    year_built = Column(Integer)
    notes = Column(Text)
    is_active = Column(Boolean, default=True)
    created_by = Column(get_uuid_column(), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    contacts = relationship("PropertyContact", back_populates="property")

class PropertyContact(Base):
    __tablename__ = "property_contacts"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    property_id = Column(get_uuid_column(), ForeignKey("properties.id"), nullable=False)
    contact_id = Column(String(255), nullable=False, index=True)
    relationship_type = Column(String(50), default="owner")
    is_primary = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    property = relationship("Property", back_populates="contacts")

class Estimate(Base):
    __tablename__ = "estimates"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    integration_id = Column(get_uuid_column(), ForeignKey("integrations.id"))
    ghl_estimate_id = Column(String(255), index=True)
    estimate_number = Column(String(100))
    opportunity_id = Column(String(255), index=True)
    contact_id = Column(String(255))
    property_id = Column(get_uuid_column(), ForeignKey("properties.id"))
    name = Column(String(255), nullable=False)
    description = Column(Text)
    amount = Column(Float, default=0.0)
    currency = Column(String(10), default="USD")
    status = Column(String(50), default="draft")  # draft, sent, accepted, declined, expired
    line_items = Column(JSON, default=[])
    applied_tax_rate = Column(Float, default=0.0)
    meta_data = Column("metadata", JSON, default={})
    expiry_date = Column(DateTime)
    converted_to_invoice = Column(Boolean, default=False)
    converted_invoice_id = Column(get_uuid_column())
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    integration_id = Column(get_uuid_column(), ForeignKey("integrations.id"))
    ghl_invoice_id = Column(String(255), index=True)
    invoice_number = Column(String(100))
    opportunity_id = Column(String(255), index=True)
    estimate_id = Column(get_uuid_column(), ForeignKey("estimates.id"))
    contact_id = Column(String(255))
    property_id = Column(get_uuid_column(), ForeignKey("properties.id"))
    name = Column(String(255), nullable=False)
    description = Column(Text)
    amount = Column(Float, default=0.0)
    amount_paid = Column(Float, default=0.0)
    currency = Column(String(10), default="USD")
    status = Column(String(50), default="draft")  # draft, sent, partially_paid, paid, void, overdue
    line_items = Column(JSON, default=[])
    payment_terms = Column(String(100), default="Net 30")
    payment_history = Column(JSON, default=[])
    applied_tax_rate = Column(Float, default=0.0)
    meta_data = Column("metadata", JSON, default={})
    due_date = Column(DateTime)
    sent_date = Column(DateTime)
    paid_date = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class SalesTransaction(Base):
    """A collected payment (or refund) that commissions are calculated against"""
    __tablename__ = "sales_transactions"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    integration_id = Column(get_uuid_column(), ForeignKey("integrations.id"))
    opportunity_id = Column(String(255), index=True)
    contact_id = Column(String(255))
    product_id = Column(get_uuid_column(), ForeignKey("products.id"))
    invoice_id = Column(get_uuid_column(), ForeignKey("invoices.id"))
    ghl_payment_id = Column(String(255), index=True)
    ghl_subscription_id = Column(String(255))
    amount = Column(Float, nullable=False)
    currency = Column(String(10), default="USD")
    transaction_type = Column(String(50), default="sale")  # sale, subscription_initial, subscription_renewal, refund
    payment_method = Column(String(50))
    payment_status = Column(String(50), default="completed")
    payment_date = Column(DateTime, default=datetime.utcnow)
    raw_data = Column(JSON, default={})
    created_at = Column(DateTime, default=datetime.utcnow)


# =======================
# COMMISSIONS
# =======================

class TeamMember(Base):
    """GHL location user known to this organization"""
    __tablename__ = "team_members"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(get_uuid_column(), ForeignKey("users.id"))
    external_id = Column(String(255), index=True)  # GHL user id
    full_name = Column(String(255))
    email = Column(String(255))
    phone = Column(String(50))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

class PaymentStructure(Base):
    __tablename__ = "payment_structures"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)  # GHL user id
    payment_type = Column(String(50), nullable=False)  # hourly, salary, commission_gross, commission_profit, hybrid
    hourly_rate = Column(Float)
    annual_salary = Column(Float)
    commission_percentage = Column(Float)
    base_salary = Column(Float)
    overtime_rate = Column(Float)
    notes = Column(Text)
    effective_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime)
    is_active = Column(Boolean, default=True)
    created_by = Column(get_uuid_column(), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class PaymentAssignment(Base):
    """Links a GHL user to the payment structure currently in force"""
    __tablename__ = "payment_assignments"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    ghl_user_id = Column(String(255), nullable=False, index=True)
    payment_structure_id = Column(get_uuid_column(), ForeignKey("payment_structures.id"), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    payment_structure = relationship("PaymentStructure")

class CommissionAssignment(Base):
    __tablename__ = "commission_assignments"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    assignment_type = Column(String(50), default="opportunity")  # opportunity, team_member
    opportunity_id = Column(String(255), index=True)
    ghl_user_id = Column(String(255), nullable=False, index=True)
    user_name = Column(String(255))
    user_email = Column(String(255))
    commission_type = Column(String(50), nullable=False)  # gross, profit, tiered, flat, hybrid
    base_rate = Column(Float, default=0.0)
    commission_tiers = Column(JSON, default=[])
    flat_amount = Column(Float)
    base_commission = Column(Float)
    is_active = Column(Boolean, default=True)
    is_disabled = Column(Boolean, default=False)
    is_eligible_for_payout = Column(Boolean, default=False)
    notes = Column(Text)
    created_by = Column(get_uuid_column())
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class CommissionRecord(Base):
    __tablename__ = "commission_records"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    transaction_id = Column(get_uuid_column(), ForeignKey("sales_transactions.id"), index=True)
    assignment_id = Column(get_uuid_column(), ForeignKey("commission_assignments.id"))
    opportunity_id = Column(String(255), index=True)
    team_member_id = Column(get_uuid_column(), ForeignKey("team_members.id"))
    ghl_user_id = Column(String(255), index=True)
    commission_type = Column(String(50))
    commission_rate = Column(Float, default=0.0)
    base_amount = Column(Float, default=0.0)
    commission_amount = Column(Float, default=0.0)
    revenue_amount = Column(Float)
    expense_amount = Column(Float)
    profit_amount = Column(Float)
    status = Column(String(50), default="pending")  # pending, approved, paid, cancelled
    requires_payment_verification = Column(Boolean, default=False)
    payout_id = Column(get_uuid_column(), ForeignKey("commission_payouts.id"))
    approved_by = Column(get_uuid_column())
    approved_at = Column(DateTime)
    approval_notes = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    transaction = relationship("SalesTransaction")

class CommissionProductRule(Base):
    __tablename__ = "commission_product_rules"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    product_id = Column(get_uuid_column(), ForeignKey("products.id"), nullable=False)
    priority = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    requires_manager_approval = Column(Boolean, default=False)
    approval_threshold = Column(Float)
    estimated_margin_percentage = Column(Float)
    max_commission_of_margin = Column(Float)
    min_sale_amount = Column(Float)
    max_commission_amount = Column(Float)
    created_at = Column(DateTime, default=datetime.utcnow)

class CommissionValidationAudit(Base):
    __tablename__ = "commission_validation_audits"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    commission_record_id = Column(get_uuid_column(), ForeignKey("commission_records.id"), nullable=False, index=True)
    validation_status = Column(String(50))  # passed, warning, failed, override
    checks_performed = Column(JSON, default=[])
    requires_approval = Column(Boolean, default=False)
    approval_status = Column(String(50))
    approved_by = Column(get_uuid_column())
    approval_date = Column(DateTime)
    approval_notes = Column(Text)
    override_reason = Column(Text)
    override_by = Column(get_uuid_column())
    override_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

class CommissionPayout(Base):
    __tablename__ = "commission_payouts"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    team_member_id = Column(get_uuid_column(), ForeignKey("team_members.id"), nullable=False)
    payout_number = Column(String(100), nullable=False)
    payout_date = Column(DateTime, default=datetime.utcnow)
    payout_period_start = Column(DateTime)
    payout_period_end = Column(DateTime)
    total_amount = Column(Float, default=0.0)
    total_sales_amount = Column(Float, default=0.0)
    commission_count = Column(Integer, default=0)
    payment_method = Column(String(50), default="direct_deposit")
    payment_status = Column(String(50), default="pending")
    generated_by = Column(get_uuid_column())
    created_at = Column(DateTime, default=datetime.utcnow)

    line_items = relationship("PayoutLineItem", back_populates="payout")

class PayoutLineItem(Base):
    __tablename__ = "payout_line_items"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    payout_id = Column(get_uuid_column(), ForeignKey("commission_payouts.id"), nullable=False)
    commission_id = Column(get_uuid_column(), ForeignKey("commission_records.id"))
    transaction_id = Column(get_uuid_column())
    opportunity_id = Column(String(255))
    contact_id = Column(String(255))
    product_name = Column(String(255))
    sale_date = Column(DateTime)
    sale_amount = Column(Float, default=0.0)
    commission_percentage = Column(Float, default=0.0)
    commission_amount = Column(Float, default=0.0)
    transaction_type = Column(String(50))

    payout = relationship("CommissionPayout", back_populates="line_items")


# =======================
# RECEIPTS
# =======================

class CompanyCreditCard(Base):
    __tablename__ = "company_credit_cards"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    card_name = Column(String(255), nullable=False)
    last_four = Column(String(4), nullable=False)
    card_type = Column(String(50))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

class Receipt(Base):
    __tablename__ = "receipts"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    integration_id = Column(get_uuid_column(), ForeignKey("integrations.id"))
    opportunity_id = Column(String(255), index=True)
    vendor_name = Column(String(255))
    amount = Column(Float, default=0.0)
    receipt_date = Column(DateTime)
    description = Column(Text)
    receipt_number = Column(String(100))
    category = Column(String(50), default="Other")
    payment_method = Column(String(50))
    last_four_digits = Column(String(4))
    is_reimbursable = Column(Boolean, default=False)
    reimbursement_status = Column(String(50))
    submitted_by = Column(get_uuid_column(), ForeignKey("team_members.id"))
    submitter_phone = Column(String(50), index=True)
    message_id = Column(String(255))
    image_url = Column(Text)
    ai_confidence = Column(Float, default=0.0)
    status = Column(String(50), default="pending_match")  # pending_match, matched, unmatched
    suggested_matches = Column(JSON, default=[])
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class IncomingMessage(Base):
    __tablename__ = "incoming_messages"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    integration_id = Column(get_uuid_column(), ForeignKey("integrations.id"))
    message_id = Column(String(255), index=True)
    conversation_id = Column(String(255))
    contact_id = Column(String(255))
    phone = Column(String(50))
    body = Column(Text)
    attachments = Column(JSON, default=[])
    direction = Column(String(20), default="inbound")
    processed = Column(Boolean, default=False)
    receipt_id = Column(get_uuid_column(), ForeignKey("receipts.id"))
    created_at = Column(DateTime, default=datetime.utcnow)

class ReceiptProcessingLog(Base):
    __tablename__ = "receipt_processing_logs"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    message_id = Column(String(255))
    phone = Column(String(50))
    attachment_url = Column(Text)
    status = Column(String(50), default="processing")  # processing, extracted, failed
    ai_response = Column(JSON)
    error_message = Column(Text)
    receipt_id = Column(get_uuid_column(), ForeignKey("receipts.id"))
    created_at = Column(DateTime, default=datetime.utcnow)


# =======================
# CHATBOT WORKFLOWS
# =======================

class Bot(Base):
    __tablename__ = "bots"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    global_context = Column(Text)
    specific_context = Column(Text)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class ChatbotWorkflow(Base):
    __tablename__ = "chatbot_workflows"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    nodes = relationship("WorkflowNode", back_populates="workflow")
    connections = relationship("WorkflowConnection", back_populates="workflow")

class BotWorkflow(Base):
    __tablename__ = "bot_workflows"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    bot_id = Column(get_uuid_column(), ForeignKey("bots.id"), nullable=False, index=True)
    workflow_id = Column(get_uuid_column(), ForeignKey("chatbot_workflows.id"), nullable=False)
    is_primary = Column(Boolean, default=False)
    priority = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

class WorkflowNode(Base):
    __tablename__ = "workflow_nodes"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    workflow_id = Column(get_uuid_column(), ForeignKey("chatbot_workflows.id"), nullable=False, index=True)
    node_id = Column(String(255), nullable=False)
    node_type = Column(String(50), nullable=False)  # start, milestone, book_appointment, message, condition, action, end
    title = Column(String(255))
    description = Column(Text)
    goal_description = Column(Text)
    possible_outcomes = Column(JSON, default=[])
    calendar_ids = Column(JSON, default=[])
    config = Column(JSON, default={})
    actions = Column(JSON, default=[])

    workflow = relationship("ChatbotWorkflow", back_populates="nodes")

    __table_args__ = (
        UniqueConstraint('workflow_id', 'node_id', name='unique_workflow_node'),
    )

class WorkflowConnection(Base):
    __tablename__ = "workflow_connections"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    workflow_id = Column(get_uuid_column(), ForeignKey("chatbot_workflows.id"), nullable=False, index=True)
    source_node_id = Column(String(255), nullable=False)
    target_node_id = Column(String(255), nullable=False)
    connection_type = Column(String(50), default="standard")  # standard, goal_achieved, goal_not_achieved, conditional
    condition = Column(JSON)
    label = Column(String(255))

    workflow = relationship("ChatbotWorkflow", back_populates="connections")

class ConversationSession(Base):
    __tablename__ = "conversation_sessions"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), nullable=False, index=True)
    bot_id = Column(get_uuid_column(), ForeignKey("bots.id"), nullable=False)
    workflow_id = Column(get_uuid_column(), ForeignKey("chatbot_workflows.id"), nullable=False)
    ghl_contact_id = Column(String(255), index=True)
    current_checkpoint_key = Column(String(255), default="start")
    session_data = Column(JSON, default={})
    is_active = Column(Boolean, default=True)
    last_activity_at = Column(DateTime, default=datetime.utcnow)
    ended_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    session_id = Column(get_uuid_column(), ForeignKey("conversation_sessions.id"), nullable=False, index=True)
    message_type = Column(String(20), nullable=False)  # user, assistant
    content = Column(Text, nullable=False)
    checkpoint_key = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)

class WorkflowGoalEvaluation(Base):
    __tablename__ = "workflow_goal_evaluations"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    session_id = Column(get_uuid_column(), ForeignKey("conversation_sessions.id"), nullable=False, index=True)
    node_id = Column(String(255))
    user_message = Column(Text)
    ai_evaluation = Column(JSON, default={})
    goal_achieved = Column(Boolean, default=False)
    confidence_score = Column(Float, default=0.0)
    reasoning = Column(Text)
    selected_outcome = Column(String(255))
    created_at = Column(DateTime, default=datetime.utcnow)

class WorkflowActionLog(Base):
    __tablename__ = "workflow_action_logs"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    session_id = Column(get_uuid_column(), ForeignKey("conversation_sessions.id"), nullable=False, index=True)
    action_type = Column(String(50))
    action_data = Column(JSON, default={})
    status = Column(String(50), default="pending")  # pending, completed, failed
    error_message = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

class AppointmentBooking(Base):
    __tablename__ = "appointment_bookings"

    id = Column(get_uuid_column(), primary_key=True, default=new_id)
    session_id = Column(get_uuid_column(), ForeignKey("conversation_sessions.id"), nullable=False, index=True)
    node_id = Column(String(255))
    contact_id = Column(String(255))
    calendar_id = Column(String(255))
    proposed_times = Column(JSON, default=[])
    selected_time = Column(DateTime)
    appointment_id = Column(String(255))
    status = Column(String(50), default="proposed")  # proposed, confirmed, failed
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =======================
# BILLING
# =======================

class Subscription(Base):
    """Mirror of a Stripe subscription"""
    __tablename__ = "subscriptions"

    id = Column(String(255), primary_key=True)  # Stripe subscription id
    user_id = Column(get_uuid_column(), ForeignKey("users.id"), index=True)
    organization_id = Column(get_uuid_column(), ForeignKey("organizations.id"), index=True)
    status = Column(String(50))  # trialing, active, past_due, canceled, incomplete, unpaid
    price_id = Column(String(255))
    quantity = Column(Integer, default=1)
    cancel_at_period_end = Column(Boolean, default=False)
    current_period_start = Column(DateTime)
    current_period_end = Column(DateTime)
    trial_start = Column(DateTime)
    trial_end = Column(DateTime)
    meta_data = Column("metadata", JSON, default={})
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
