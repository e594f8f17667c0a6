from decimal import Decimal

from models import Tenant, User, Class, Student, StudentStatusEnum


def make_tenant(session, slug='greenwood', name='Greenwood High'):
    tenant = Tenant(slug=slug, name=name, is_active=True)
    session.add(tenant)
    session.commit()
    return tenant


def make_class(session, tenant_id, class_name='10', section='A'):
    student_class = Class(tenant_id=tenant_id, class_name=class_name, section=section)
    session.add(student_class)
    session.commit()
    return student_class


def make_student(session, tenant_id, class_id, admission_number, scholarship=None,
                 status=StudentStatusEnum.ACTIVE, first_name='Test', last_name=None):
    last_name = last_name or admission_number
    student = Student(
        tenant_id=tenant_id,
        admission_number=admission_number,
        first_name=first_name,
        last_name=last_name,
        full_name=f"{first_name} {last_name}",
        class_id=class_id,
        status=status,
        scholarship_percentage=Decimal(str(scholarship)) if scholarship is not None else None
    )
    session.add(student)
    session.commit()
    return student


def make_user(session, tenant_id, username='admin', role='school_admin', password='secret123'):
    user = User(
        tenant_id=tenant_id,
        username=username,
        email=f"{username}@example.com",
        role=role,
        first_name=username.title(),
        is_active=True
    )
    user.set_password(password)
    session.add(user)
    session.commit()
    return user


def monthly_components(amount='500.00'):
    return [{'name': 'Tuition Fee', 'component_type': 'tuition', 'amount': amount, 'frequency': 'monthly'}]
