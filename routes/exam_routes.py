from decimal import Decimal

from flask import Blueprint, request, jsonify

from extensions import db
from models import Exam, Grade, SchoolClass, Student, Subject
from utils import STAFF_ROLES, admin_required, role_required
from utils.academic_year import get_year, resolve_year_id
from utils.errors import Conflict, NotFound, ValidationFailed
from utils.ledger import money
from utils.security import sanitize_input
from utils.validation import parse_amount, parse_date, parse_int, require_fields

exam_bp = Blueprint('exams', __name__, url_prefix='/exams')

GRADE_BANDS = (
    (Decimal("90"), "A+"),
    (Decimal("80"), "A"),
    (Decimal("70"), "B+"),
    (Decimal("60"), "B"),
    (Decimal("50"), "C"),
    (Decimal("40"), "D"),
)


def letter_grade(score, max_score) -> str:
    max_score = money(max_score)
    if max_score <= 0:
        return "F"
    pct = money(score) * 100 / max_score
    for floor, letter in GRADE_BANDS:
        if pct >= floor:
            return letter
    return "F"


def _get(exam_id) -> Exam:
    exam = db.session.get(Exam, exam_id)
    if exam is None:
        raise NotFound(f"Exam {exam_id} not found")
    return exam


@exam_bp.route('/subjects', methods=['GET'])
@role_required(*STAFF_ROLES)
def subjects():
    return jsonify({"subjects": [s.to_dict() for s in Subject.query.order_by(Subject.name)]})


@exam_bp.route('/subjects', methods=['POST'])
@admin_required
def create_subject():
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("name",))
    name = sanitize_input(payload["name"])
    if Subject.query.filter_by(name=name).first() is not None:
        raise Conflict(f"Subject {name} already exists")
    subject = Subject(name=name, code=sanitize_input(payload.get("code")) or None)
    db.session.add(subject)
    db.session.commit()
    return jsonify({"subject": subject.to_dict()}), 201


@exam_bp.route('', methods=['GET'])
@role_required(*STAFF_ROLES)
def index():
    year_id = resolve_year_id(request.args.get("academic_year_id"))
    query = Exam.query.filter_by(academic_year_id=year_id)
    if request.args.get("class_id"):
        query = query.filter_by(class_id=parse_int(request.args["class_id"], "class_id"))
    return jsonify({"exams": [e.to_dict() for e in query.order_by(Exam.exam_date, Exam.id)]})


@exam_bp.route('', methods=['POST'])
@role_required("admin", "teacher")
def create():
    payload = request.get_json(silent=True) or {}
    require_fields(payload, ("name", "class_id"))
    class_id = parse_int(payload["class_id"], "class_id")
    if db.session.get(SchoolClass, class_id) is None:
        raise ValidationFailed("Unknown class", {"class_id": "not found"})
    year_id = resolve_year_id(payload.get("academic_year_id"))
    if year_id is None:
        raise ValidationFailed("academic_year_id is required", {"academic_year_id": "required"})
    exam = Exam(
        name=sanitize_input(payload["name"]),
        class_id=class_id,
        academic_year_id=get_year(year_id).id,
        exam_date=parse_date(payload.get("exam_date"), "exam_date"),
        max_score=parse_amount(payload.get("max_score", 100), "max_score"),
    )
    db.session.add(exam)
    db.session.commit()
    return jsonify({"exam": exam.to_dict()}), 201


@exam_bp.route('/<int:exam_id>', methods=['DELETE'])
@admin_required
def delete(exam_id):
    db.session.delete(_get(exam_id))
    db.session.commit()
    return jsonify({"deleted": exam_id})


@exam_bp.route('/<int:exam_id>/grades', methods=['POST'])
@role_required("admin", "teacher")
def enter_grades(exam_id):
    """Bulk upsert of scores; the letter grade is derived from the percentage."""
    exam = _get(exam_id)
    payload = request.get_json(silent=True) or {}
    entries = payload.get("grades")
    if not isinstance(entries, list) or not entries:
        raise ValidationFailed("grades must be a non-empty list", {"grades": "required"})
    saved = []
    for index, entry in enumerate(entries):
        student_id = parse_int(entry.get("student_id"), f"grades[{index}].student_id")
        subject_id = parse_int(entry.get("subject_id"), f"grades[{index}].subject_id")
        score = parse_amount(entry.get("score"), f"grades[{index}].score", positive=False)
        if score > money(exam.max_score):
            raise ValidationFailed(f"Score cannot exceed {exam.max_score}",
                                   {f"grades[{index}].score": "above max score"})
        if db.session.get(Student, student_id) is None or db.session.get(Subject, subject_id) is None:
            raise ValidationFailed("Unknown student or subject", {f"grades[{index}]": "not found"})
        grade = Grade.query.filter_by(exam_id=exam.id, student_id=student_id, subject_id=subject_id).first()
        if grade is None:
            grade = Grade(exam_id=exam.id, student_id=student_id, subject_id=subject_id)
            db.session.add(grade)
        grade.score = score
        grade.grade = letter_grade(score, exam.max_score)
        grade.remarks = entry.get("remarks")
        saved.append(grade)
    db.session.commit()
    return jsonify({"exam_id": exam.id, "grades": [g.to_dict() for g in saved]})


@exam_bp.route('/<int:exam_id>/results', methods=['GET'])
@role_required(*STAFF_ROLES)
def results(exam_id):
    exam = _get(exam_id)
    per_student = {}
    for grade in Grade.query.filter_by(exam_id=exam.id).all():
        entry = per_student.setdefault(grade.student_id, {"student_id": grade.student_id, "total": Decimal("0"),
                                                          "subjects": 0})
        entry["total"] += money(grade.score)
        entry["subjects"] += 1
    rows = []
    for entry in per_student.values():
        average = entry["total"] / entry["subjects"]
        rows.append({
            "student_id": entry["student_id"],
            "total": float(entry["total"]),
            "average": float(money(average)),
            "grade": letter_grade(average, exam.max_score),
        })
    rows.sort(key=lambda r: r["total"], reverse=True)
    return jsonify({"exam": exam.to_dict(), "results": rows})
