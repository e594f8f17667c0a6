"""
Single Database Multi-Tenant Models
This file contains models that are shared across tenants and the tenant-scoped
directory (classes and students) that fee billing runs against
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Numeric, Enum, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime
import enum

Base = declarative_base()

# ===== TENANT MODEL =====
class Tenant(Base):
    __tablename__ = 'tenants'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(100), unique=True, nullable=False)  # URL identifier
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    users = relationship("User", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f'<Tenant {self.name} ({self.slug})>'

# ===== USER MODEL =====
class User(Base, UserMixin):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=True)  # NULL for portal admin
    username = Column(String(80), nullable=False)
    email = Column(String(120), nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), default='teacher')  # portal_admin, school_admin, accountant, teacher, student
    first_name = Column(String(50))
    last_name = Column(String(50))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant", back_populates="users")

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def full_name(self):
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def get_id(self):
        """Return user ID in format needed by Flask-Login"""
        if self.tenant_id:
            return f"school_{self.tenant_id}_{self.id}"
        else:
            return f"admin_{self.id}"

    def __repr__(self):
        return f'<User {self.username} ({self.role})>'

# ===== ENUMS FOR TENANT-SCOPED MODELS =====
class StudentStatusEnum(enum.Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    TRANSFERRED = "Transferred"
    LEFT = "Left"
    GRADUATED = "Graduated"

# ===== TENANT-SCOPED MODELS =====

class Student(Base):
    __tablename__ = 'students'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'admission_number', name='unique_tenant_admission_number'),
        Index('idx_student_tenant_status', 'tenant_id', 'status'),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)

    # Basic Information
    admission_number = Column(String(20), nullable=False)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    full_name = Column(String(100), nullable=False)

    # Guardian Information
    guardian_phone = Column(String(20))
    guardian_email = Column(String(120))

    # Academic Information
    class_id = Column(Integer, ForeignKey('classes.id'), nullable=False)
    roll_number = Column(String(10))
    status = Column(Enum(StudentStatusEnum, values_callable=lambda obj: [e.value for e in obj]), default=StudentStatusEnum.ACTIVE)

    # Scholarship applied to every generated invoice line, 0-100
    scholarship_percentage = Column(Numeric(5, 2), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    student_class = relationship("Class", back_populates="students")

    def to_dict(self):
        return {
            'id': self.id,
            'admission_number': self.admission_number,
            'full_name': self.full_name,
            'class_name': f"{self.student_class.class_name}-{self.student_class.section}" if self.student_class else None,
            'roll_number': self.roll_number,
            'status': self.status.value if self.status else None
        }

    def __repr__(self):
        return f'<Student {self.full_name} ({self.admission_number})>'

class Class(Base):
    __tablename__ = 'classes'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    class_name = Column(String(10), nullable=False)  # e.g., "10", "9"
    section = Column(String(5), nullable=False)  # e.g., "A", "B"
    description = Column(Text)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    students = relationship("Student", back_populates="student_class", cascade="all, delete-orphan")

    def __repr__(self):
        return f'<Class {self.class_name}-{self.section}>'
