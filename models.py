from datetime import datetime, date
from decimal import Decimal

from extensions import db

PYD_FEE_TYPE = "Previous Year Dues"

FEE_TYPES = (
    "Tuition Fee",
    "Development Fee",
    "Library Fee",
    "Laboratory Fee",
    "Sports Fee",
    "Transport Fee",
    "Exam Fee",
    "Books Fee",
    "Uniform Fee",
    "Activities Fee",
    "Meals Fee",
    "Other Fee",
    PYD_FEE_TYPE,
)

ROLES = ("admin", "teacher", "parent", "accountant")
STUDENT_STATUSES = ("Active", "Inactive", "Alumni", "Transferred", "Withdrawn")
FEE_STATUSES = ("Pending", "Partial", "Paid", "Overdue")
ATTENDANCE_STATUSES = ("Present", "Absent", "Late", "Excused")


def _plain(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class SerializerMixin:
    """Column-to-JSON helper shared by the models below."""

    _hidden: tuple = ()

    def to_dict(self) -> dict:
        return {
            col.key: _plain(getattr(self, col.key))
            for col in self.__mapper__.column_attrs
            if col.key not in self._hidden
        }


class Profile(SerializerMixin, db.Model):
    __tablename__ = 'profiles'
    _hidden = ('password_hash', 'failed_attempts', 'locked_until')

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    role = db.Column(db.String(20), nullable=False, default='teacher')
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    email_confirmed = db.Column(db.Boolean, nullable=False, default=False)
    failed_attempts = db.Column(db.Integer, nullable=False, default=0)
    locked_until = db.Column(db.DateTime)
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or self.email

    def __repr__(self):
        return f'<Profile {self.email} ({self.role})>'


class AcademicYear(SerializerMixin, db.Model):
    __tablename__ = 'academic_years'

    id = db.Column(db.Integer, primary_key=True)
    year_name = db.Column(db.String(20), unique=True, nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    is_current = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<AcademicYear {self.year_name}{" *" if self.is_current else ""}>'


class SchoolClass(SerializerMixin, db.Model):
    __tablename__ = 'classes'
    __table_args__ = (
        db.UniqueConstraint('name', 'section', name='uq_classes_name_section'),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), nullable=False)
    section = db.Column(db.String(10))
    homeroom_teacher_id = db.Column(db.Integer, db.ForeignKey('teachers.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    students = db.relationship('Student', backref='school_class', lazy='dynamic')

    @property
    def label(self) -> str:
        return f"{self.name} ({self.section})" if self.section else self.name

    def __repr__(self):
        return f'<SchoolClass {self.label}>'


class Teacher(SerializerMixin, db.Model):
    __tablename__ = 'teachers'

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.String(50), unique=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    phone_number = db.Column(db.String(20))
    department = db.Column(db.String(100))
    designation = db.Column(db.String(100))
    qualification = db.Column(db.String(255))
    hire_date = db.Column(db.Date)
    salary = db.Column(db.Numeric(12, 2))
    status = db.Column(db.String(20), nullable=False, default='Active')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Teacher {self.first_name} {self.last_name}>'


class Parent(SerializerMixin, db.Model):
    __tablename__ = 'parents'

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255))
    phone_number = db.Column(db.String(20))
    relation = db.Column(db.String(30))
    occupation = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    links = db.relationship('StudentParentLink', backref='parent', cascade="all, delete-orphan")

    def __repr__(self):
        return f'<Parent {self.first_name} {self.last_name}>'


class StudentParentLink(SerializerMixin, db.Model):
    __tablename__ = 'student_parents'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'parent_id', name='uq_student_parent'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey('parents.id'), nullable=False)
    is_primary = db.Column(db.Boolean, nullable=False, default=False)


class Student(SerializerMixin, db.Model):
    __tablename__ = 'students'

    id = db.Column(db.Integer, primary_key=True)
    admission_number = db.Column(db.String(50), unique=True, nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    gender = db.Column(db.String(10))
    date_of_birth = db.Column(db.Date)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'))
    status = db.Column(db.String(20), nullable=False, default='Active')
    date_of_join = db.Column(db.Date, default=date.today)
    exit_reason = db.Column(db.String(255))
    exit_date = db.Column(db.Date)
    exit_notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    fee_records = db.relationship('StudentFeeRecord', backref='student', lazy='dynamic')
    parent_links = db.relationship('StudentParentLink', backref='student', cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self):
        return f'<Student {self.full_name} ({self.admission_number})>'


class Attendance(SerializerMixin, db.Model):
    __tablename__ = 'attendance'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'date', name='uq_attendance_student_date'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'))
    date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(10), nullable=False)
    remarks = db.Column(db.String(255))
    marked_by = db.Column(db.Integer, db.ForeignKey('profiles.id'))


class Subject(SerializerMixin, db.Model):
    __tablename__ = 'subjects'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    code = db.Column(db.String(20))


class Exam(SerializerMixin, db.Model):
    __tablename__ = 'exams'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'), nullable=False)
    academic_year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False)
    exam_date = db.Column(db.Date)
    max_score = db.Column(db.Numeric(6, 2), nullable=False, default=100)

    grades = db.relationship('Grade', backref='exam', cascade="all, delete-orphan")


class Grade(SerializerMixin, db.Model):
    __tablename__ = 'grades'
    __table_args__ = (
        db.UniqueConstraint('exam_id', 'student_id', 'subject_id', name='uq_grade_exam_student_subject'),
    )

    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey('exams.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subjects.id'), nullable=False)
    score = db.Column(db.Numeric(6, 2), nullable=False)
    grade = db.Column(db.String(3))
    remarks = db.Column(db.String(255))


class FeeStructure(SerializerMixin, db.Model):
    __tablename__ = 'fee_structures'
    __table_args__ = (
        db.UniqueConstraint('class_id', 'academic_year_id', 'fee_type', name='uq_fee_structure'),
    )

    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'), nullable=False)
    academic_year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False)
    fee_type = db.Column(db.String(50), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    frequency = db.Column(db.String(20), nullable=False, default='Annually')
    description = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    school_class = db.relationship('SchoolClass')
    academic_year = db.relationship('AcademicYear')


class StudentFeeRecord(SerializerMixin, db.Model):
    __tablename__ = 'student_fee_records'
    __table_args__ = (
        # One row per fee type per student per year; also caps PYD at one row
        db.UniqueConstraint('student_id', 'academic_year_id', 'fee_type', name='uq_fee_record_student_year_type'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False, index=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'))
    academic_year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False, index=True)
    fee_type = db.Column(db.String(50), nullable=False)
    actual_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    paid_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    balance_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    due_date = db.Column(db.Date)
    status = db.Column(db.String(10), nullable=False, default='Pending')
    is_carry_forward = db.Column(db.Boolean, nullable=False, default=False)
    carry_forward_source_year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'))
    priority_order = db.Column(db.Integer, nullable=False, default=1)
    payment_blocked = db.Column(db.Boolean, nullable=False, default=False)
    discount_notes = db.Column(db.Text)
    discount_updated_by = db.Column(db.String(150))
    discount_updated_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    academic_year = db.relationship('AcademicYear', foreign_keys=[academic_year_id])
    school_class = db.relationship('SchoolClass')

    @property
    def is_pyd(self) -> bool:
        return self.fee_type == PYD_FEE_TYPE

    def __repr__(self):
        return f'<StudentFeeRecord StudentID={self.student_id} {self.fee_type} Bal={self.balance_fee}>'


class FeePaymentRecord(SerializerMixin, db.Model):
    __tablename__ = 'fee_payment_records'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False, index=True)
    fee_record_id = db.Column(db.Integer, db.ForeignKey('student_fee_records.id'))
    target_academic_year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'))
    amount_paid = db.Column(db.Numeric(12, 2), nullable=False)
    late_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    payment_date = db.Column(db.Date, nullable=False, default=date.today)
    payment_method = db.Column(db.String(30), nullable=False, default='Cash')
    receipt_number = db.Column(db.String(64), unique=True, nullable=False)
    payment_receiver = db.Column(db.String(150), nullable=False)
    notes = db.Column(db.Text)
    created_by = db.Column(db.String(150))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    allocations = db.relationship(
        'PaymentAllocation', backref='payment', order_by='PaymentAllocation.allocation_order'
    )
    reversals = db.relationship('PaymentReversal', backref='payment')

    def __repr__(self):
        return f'<FeePaymentRecord {self.receipt_number} Paid={self.amount_paid}>'


class PaymentAllocation(SerializerMixin, db.Model):
    __tablename__ = 'payment_allocations'

    id = db.Column(db.Integer, primary_key=True)
    payment_record_id = db.Column(db.Integer, db.ForeignKey('fee_payment_records.id'), nullable=False)
    fee_record_id = db.Column(db.Integer, db.ForeignKey('student_fee_records.id'), nullable=False)
    allocated_amount = db.Column(db.Numeric(12, 2), nullable=False)
    reversed_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allocation_order = db.Column(db.Integer, nullable=False, default=1)
    allocation_date = db.Column(db.DateTime, default=datetime.utcnow)

    fee_record = db.relationship('StudentFeeRecord')


class PaymentReversal(SerializerMixin, db.Model):
    __tablename__ = 'payment_reversals'

    id = db.Column(db.Integer, primary_key=True)
    payment_record_id = db.Column(db.Integer, db.ForeignKey('fee_payment_records.id'), nullable=False)
    reversal_type = db.Column(db.String(10), nullable=False)
    reversal_amount = db.Column(db.Numeric(12, 2), nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.Text)
    authorized_by = db.Column(db.String(150), nullable=False)
    reversal_date = db.Column(db.DateTime, default=datetime.utcnow)


class DiscountHistory(SerializerMixin, db.Model):
    __tablename__ = 'discount_history'

    id = db.Column(db.Integer, primary_key=True)
    fee_record_id = db.Column(db.Integer, db.ForeignKey('student_fee_records.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    discount_type = db.Column(db.String(20), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False)
    discount_percentage = db.Column(db.Numeric(5, 2))
    reason = db.Column(db.String(255))
    notes = db.Column(db.Text)
    tag = db.Column(db.String(50))
    applies_to = db.Column(db.String(10), nullable=False, default='fee')
    applied_by = db.Column(db.String(150))
    applied_at = db.Column(db.DateTime, default=datetime.utcnow)


class FeeChangeHistory(SerializerMixin, db.Model):
    __tablename__ = 'fee_change_history'

    id = db.Column(db.Integer, primary_key=True)
    fee_record_id = db.Column(db.Integer, db.ForeignKey('student_fee_records.id'), nullable=False, index=True)
    change_type = db.Column(db.String(20), nullable=False)
    previous_value = db.Column(db.Numeric(12, 2))
    new_value = db.Column(db.Numeric(12, 2))
    amount = db.Column(db.Numeric(12, 2))
    changed_by = db.Column(db.String(150))
    notes = db.Column(db.Text)
    payment_method = db.Column(db.String(30))
    receipt_number = db.Column(db.String(64))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class StudentPromotion(SerializerMixin, db.Model):
    __tablename__ = 'student_promotions'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'from_academic_year_id', 'to_academic_year_id',
                            name='uq_promotion_student_years'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    from_academic_year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False)
    to_academic_year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False)
    from_class_id = db.Column(db.Integer, db.ForeignKey('classes.id'))
    to_class_id = db.Column(db.Integer, db.ForeignKey('classes.id'))
    promotion_type = db.Column(db.String(12), nullable=False)
    reason = db.Column(db.String(255))
    notes = db.Column(db.Text)
    promoted_by = db.Column(db.String(150))
    promotion_date = db.Column(db.DateTime, default=datetime.utcnow)


class PromotionRun(SerializerMixin, db.Model):
    __tablename__ = 'promotion_runs'

    id = db.Column(db.Integer, primary_key=True)
    idempotency_key = db.Column(db.String(128), unique=True, nullable=False)
    target_academic_year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False)
    promoted_by = db.Column(db.String(150))
    result = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class AuditLog(SerializerMixin, db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer)
    username = db.Column(db.String(150))
    user_role = db.Column(db.String(64))
    action = db.Column(db.String(100), nullable=False, index=True)
    target = db.Column(db.String(100))
    detail = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
