from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class BusinessAccount(Base):
    __tablename__ = "BusinessAccounts"

    AccountID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Type = Column(String(20), nullable=False)
    CreatedDate = Column(DateTime(timezone=True), server_default=func.now())
    UpdatedDate = Column(DateTime(timezone=True), server_default=func.now())

    Members = relationship("UserAccount", back_populates="Account", cascade="all, delete-orphan")
    MachineTemplates = relationship("MachineTemplate", back_populates="Account")


class AppUser(Base):
    __tablename__ = "AppUsers"

    UserID = Column(Integer, primary_key=True)
    Email = Column(String(255), nullable=False, unique=True)
    FullName = Column(String(255), nullable=False)
    PasswordHash = Column(String(256))
    PasswordSalt = Column(String(64))
    PasswordUpdatedAt = Column(Integer)
    IsActive = Column(Boolean, default=True)
    LastLogin = Column(DateTime(timezone=True))
    CreatedDate = Column(DateTime(timezone=True), server_default=func.now())

    Accounts = relationship("UserAccount", back_populates="User", cascade="all, delete-orphan")


class UserAccount(Base):
    __tablename__ = "UserAccounts"
    __table_args__ = (Index("ix_user_account", "UserID", "AccountID"),)

    UserAccountID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("AppUsers.UserID", ondelete="CASCADE"), nullable=False)
    AccountID = Column(Integer, ForeignKey("BusinessAccounts.AccountID", ondelete="CASCADE"), nullable=False)
    Role = Column(String(30), nullable=False, default="account_member")
    CreatedDate = Column(DateTime(timezone=True), server_default=func.now())

    User = relationship("AppUser", back_populates="Accounts")
    Account = relationship("BusinessAccount", back_populates="Members")


class MachineTemplate(Base):
    __tablename__ = "MachineTemplates"

    TemplateID = Column(Integer, primary_key=True)
    AccountID = Column(Integer, ForeignKey("BusinessAccounts.AccountID", ondelete="CASCADE"), nullable=False, index=True)
    Name = Column(String(255), nullable=False)
    Code = Column(String(50), nullable=False, unique=True)
    Description = Column(Text)
    TotalCount = Column(Integer, nullable=False, default=1)
    PricePerHour = Column(Integer)
    AvailabilityJson = Column(Text)
    SpecsJson = Column(Text)
    Tags = Column(String(500))
    CreatedDate = Column(DateTime(timezone=True), server_default=func.now())
    UpdatedDate = Column(DateTime(timezone=True), server_default=func.now())

    Account = relationship("BusinessAccount", back_populates="MachineTemplates")
    Instances = relationship("MachineInstance", back_populates="Template", cascade="all, delete-orphan")
    Bookings = relationship("MachineBooking", back_populates="Template")


class MachineInstance(Base):
    __tablename__ = "MachineInstances"

    InstanceID = Column(Integer, primary_key=True)
    TemplateID = Column(Integer, ForeignKey("MachineTemplates.TemplateID", ondelete="CASCADE"), nullable=False, index=True)
    InstanceCode = Column(String(80), nullable=False, unique=True)
    AvailabilityJson = Column(Text)
    Status = Column(String(20), nullable=False, default="active", index=True)
    MetadataJson = Column(Text)
    CreatedDate = Column(DateTime(timezone=True), server_default=func.now())
    UpdatedDate = Column(DateTime(timezone=True), server_default=func.now())

    Template = relationship("MachineTemplate", back_populates="Instances")
    Bookings = relationship("MachineBooking", back_populates="Instance")


class MachineBooking(Base):
    __tablename__ = "MachineBookings"
    __table_args__ = (
        CheckConstraint("StartTime < EndTime", name="ck_booking_time_range"),
        Index("ix_booking_instance_time", "MachineInstanceID", "StartTime", "EndTime"),
    )

    BookingID = Column(Integer, primary_key=True)
    MachineInstanceID = Column(Integer, ForeignKey("MachineInstances.InstanceID", ondelete="RESTRICT"), nullable=False)
    TemplateID = Column(Integer, ForeignKey("MachineTemplates.TemplateID"), nullable=False, index=True)
    ClientAccountID = Column(Integer, ForeignKey("BusinessAccounts.AccountID", ondelete="RESTRICT"), nullable=False, index=True)
    ClientUserID = Column(Integer, ForeignKey("AppUsers.UserID", ondelete="RESTRICT"), nullable=False)
    Label = Column(String(255))
    StartTime = Column(DateTime(timezone=True), nullable=False)
    EndTime = Column(DateTime(timezone=True), nullable=False)
    Status = Column(String(40), nullable=False, default="pending_renter_approval", index=True)
    MessagesJson = Column(Text)
    PaymentID = Column(Integer)
    CreatedDate = Column(DateTime(timezone=True), server_default=func.now())
    UpdatedDate = Column(DateTime(timezone=True), server_default=func.now())

    Instance = relationship("MachineInstance", back_populates="Bookings")
    Template = relationship("MachineTemplate", back_populates="Bookings")
    Payments = relationship("Payment", back_populates="Booking")


class Payment(Base):
    __tablename__ = "Payments"

    PaymentID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("MachineBookings.BookingID", ondelete="RESTRICT"), nullable=False, index=True)
    Provider = Column(String(40), nullable=False, default="stripe")
    ExternalID = Column(String(120), nullable=False, unique=True)
    AmountCents = Column(Integer, nullable=False)
    Currency = Column(String(3), nullable=False, default="USD")
    Status = Column(String(20), nullable=False)
    CreatedDate = Column(DateTime(timezone=True), server_default=func.now())
    UpdatedDate = Column(DateTime(timezone=True), server_default=func.now())

    Booking = relationship("MachineBooking", back_populates="Payments")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime(timezone=True), server_default=func.now())
