"""
Cohort Directory Helpers
Resolves which students a billing run covers. Student and class records are
owned by the student directory; fee billing only reads them here.
"""

from sqlalchemy.orm import Session
from models import Student, Class, StudentStatusEnum


def resolve_cohort(session: Session, tenant_id: int, class_name: str = None,
                   section: str = None, class_ids: list = None) -> list:
    """
    Get the active students of a cohort.

    Args:
        class_name: Cohort, e.g. "10"; matches every section of that class
        section: Optional group within the cohort, e.g. "A"
        class_ids: Explicit classes, used when no class_name is given

    With neither class_name nor class_ids every active student of the tenant
    is returned.
    """
    query = session.query(Student).filter(
        Student.tenant_id == tenant_id,
        Student.status == StudentStatusEnum.ACTIVE
    )

    if class_name or section:
        query = query.join(Class, Class.id == Student.class_id).filter(Class.tenant_id == tenant_id)
        if class_name:
            query = query.filter(Class.class_name == str(class_name))
        if section:
            query = query.filter(Class.section == str(section))
        if class_ids and not class_name:
            query = query.filter(Class.id.in_(class_ids))
    elif class_ids:
        query = query.filter(Student.class_id.in_(class_ids))

    return query.order_by(Student.id).all()


def get_student(session: Session, tenant_id: int, student_id: int):
    return session.query(Student).filter_by(id=student_id, tenant_id=tenant_id).first()
