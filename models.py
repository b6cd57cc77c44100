import json
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.types import TypeDecorator, TEXT
from sqlalchemy import UniqueConstraint
from werkzeug.security import generate_password_hash, check_password_hash

from scoring import AssessmentStatus, effective_score
from weights import (
    DEFAULT_TASK_WEIGHT, DEFAULT_PEER_WEIGHT, DEFAULT_CODE_WEIGHT,
    DEFAULT_LATE_PENALTY_WEIGHT, DEFAULT_FREERIDER_THRESHOLD, DEFAULT_PRESSURE_THRESHOLD,
)


db = SQLAlchemy()

TASK_DIFFICULTY_WEIGHTS = {"EASY": 1, "MEDIUM": 2, "HARD": 3}


class JSONText(TypeDecorator):
    impl = TEXT
    cache_ok = True
    def process_bind_param(self, value, dialect):
        if value is None: return None
        return json.dumps(value, ensure_ascii=False)
    def process_result_value(self, value, dialect):
        if value is None: return None
        return json.loads(value)

class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    role = db.Column(db.String(32), nullable=False, default="instructor")  # instructor, admin, mentor
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    def set_password(self, pw): self.password_hash = generate_password_hash(pw)
    def check_password(self, pw): return check_password_hash(self.password_hash, pw)

class Student(db.Model):
    __tablename__ = 'students'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False, default="")
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    def set_password(self, pw): self.password_hash = generate_password_hash(pw)
    def check_password(self, pw): return check_password_hash(self.password_hash, pw)

class Project(db.Model):
    __tablename__ = "projects"
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(12), unique=True, index=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)
    instructor_user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    # Weight configuration, stored as fractions. W1+W2+W3 must be 1.0; W4 subtracts per late task.
    weight_w1 = db.Column(db.Float, nullable=False, default=DEFAULT_TASK_WEIGHT)
    weight_w2 = db.Column(db.Float, nullable=False, default=DEFAULT_PEER_WEIGHT)
    weight_w3 = db.Column(db.Float, nullable=False, default=DEFAULT_CODE_WEIGHT)
    weight_w4 = db.Column(db.Float, nullable=False, default=DEFAULT_LATE_PENALTY_WEIGHT)
    freerider_threshold = db.Column(db.Float, nullable=False, default=DEFAULT_FREERIDER_THRESHOLD)
    pressure_threshold = db.Column(db.Float, nullable=False, default=DEFAULT_PRESSURE_THRESHOLD)

    # Assessment state
    assessment_status = db.Column(db.String(16), nullable=False, default=AssessmentStatus.DRAFT.value)
    assessment_version = db.Column(db.Integer, nullable=False, default=0)
    finalized_at = db.Column(db.DateTime, nullable=True)
    finalized_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    finalized_weights = db.Column(JSONText, nullable=True)  # WeightConfig snapshot taken at finalize

    instructor = db.relationship('User', foreign_keys=[instructor_user_id])
    finalized_by = db.relationship('User', foreign_keys=[finalized_by_user_id])

    @property
    def status(self):
        return AssessmentStatus(self.assessment_status or AssessmentStatus.DRAFT.value)

    @property
    def is_finalized(self):
        return self.status is AssessmentStatus.FINALIZED

class StudentGroup(db.Model):
    __tablename__ = "student_groups"
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id', ondelete="CASCADE"), index=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    leader_student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="SET NULL"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    project = db.relationship('Project', backref=db.backref('groups', cascade="all,delete-orphan", order_by='StudentGroup.id'))
    leader = db.relationship('Student')

    def student_ids(self):
        """Members in join order, then the leader if not already a member."""
        ids = [m.student_id for m in self.memberships]
        if self.leader_student_id and self.leader_student_id not in ids:
            ids.append(self.leader_student_id)
        return ids

class StudentGroupMembership(db.Model):
    __tablename__ = "student_group_memberships"
    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('student_groups.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    group = db.relationship('StudentGroup', backref=db.backref('memberships', cascade="all,delete-orphan", order_by='StudentGroupMembership.id'))
    student = db.relationship('Student', backref=db.backref('group_memberships', cascade="all,delete-orphan"))

    __table_args__ = (
        UniqueConstraint('group_id', 'student_id', name='uq_group_student'),
    )

class Task(db.Model):
    __tablename__ = "tasks"
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id', ondelete="CASCADE"), index=True, nullable=False)
    group_id = db.Column(db.Integer, db.ForeignKey('student_groups.id', ondelete="CASCADE"), index=True, nullable=False)
    assignee_student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="SET NULL"), index=True, nullable=True)
    title = db.Column(db.String(255), nullable=False)
    difficulty = db.Column(db.String(16), nullable=False, default="MEDIUM")  # EASY | MEDIUM | HARD
    status = db.Column(db.String(16), nullable=False, default="NOT_STARTED")  # NOT_STARTED | IN_PROGRESS | COMPLETED
    deadline = db.Column(db.Date, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    group = db.relationship('StudentGroup', backref=db.backref('tasks', cascade="all,delete-orphan"))
    assignee = db.relationship('Student')

    @property
    def difficulty_weight(self):
        return TASK_DIFFICULTY_WEIGHTS.get((self.difficulty or "").upper(), 1)

    @property
    def is_completed(self):
        return self.status == "COMPLETED"

class CommitRecord(db.Model):
    __tablename__ = "commit_records"
    id = db.Column(db.Integer, primary_key=True)
    group_id = db.Column(db.Integer, db.ForeignKey('student_groups.id', ondelete="CASCADE"), index=True, nullable=False)
    task_id = db.Column(db.Integer, db.ForeignKey('tasks.id', ondelete="SET NULL"), index=True, nullable=True)
    commit_sha = db.Column(db.String(64), nullable=False)
    author_email = db.Column(db.String(255), nullable=True)
    message = db.Column(db.Text, nullable=True)
    additions = db.Column(db.Integer, nullable=True)
    deletions = db.Column(db.Integer, nullable=True)
    valid = db.Column(db.Boolean, nullable=False, default=True)
    committed_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    task = db.relationship('Task', backref=db.backref('commits'))

class PeerReview(db.Model):
    __tablename__ = "peer_reviews"
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id', ondelete="CASCADE"), index=True, nullable=False)
    reviewer_student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), nullable=False)
    reviewee_student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)
    completion_score = db.Column(db.Float, nullable=False)  # 1..5
    cooperation_score = db.Column(db.Float, nullable=False)  # 1..5
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    __table_args__ = (
        UniqueConstraint('project_id', 'reviewer_student_id', 'reviewee_student_id', name='uq_peer_review'),
    )

class ContributionScore(db.Model):
    __tablename__ = "contribution_scores"
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)

    # normalized components, 0..10
    task_completion_score = db.Column(db.Float, nullable=False, default=0.0)
    peer_review_score = db.Column(db.Float, nullable=False, default=0.0)
    code_contribution_score = db.Column(db.Float, nullable=False, default=0.0)
    late_task_count = db.Column(db.Integer, nullable=False, default=0)
    # raw code statistics kept for audit
    total_additions = db.Column(db.Integer, nullable=False, default=0)
    total_deletions = db.Column(db.Integer, nullable=False, default=0)

    calculated_score = db.Column(db.Float, nullable=False, default=0.0)
    adjusted_score = db.Column(db.Float, nullable=True)
    adjustment_reason = db.Column(db.String(500), nullable=True)
    is_final = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now, nullable=False)

    project = db.relationship('Project', backref=db.backref('contribution_scores', cascade="all,delete-orphan"))
    student = db.relationship('Student')

    __table_args__ = (
        UniqueConstraint('project_id', 'student_id', name='uq_score_project_student'),
    )

    def effective_score(self):
        return effective_score(self.calculated_score, self.adjusted_score)

    def to_dict(self):
        student = self.student
        return {
            "id": self.id,
            "projectId": self.project_id,
            "userId": self.student_id,
            "fullName": student.name if student else None,
            "email": student.email if student else None,
            "taskCompletionScore": self.task_completion_score,
            "peerReviewScore": self.peer_review_score,
            "codeContributionScore": self.code_contribution_score,
            "lateTaskCount": self.late_task_count,
            "totalAdditions": self.total_additions,
            "totalDeletions": self.total_deletions,
            "calculatedScore": self.calculated_score,
            "adjustedScore": self.adjusted_score,
            "adjustmentReason": self.adjustment_reason,
            "effectiveScore": self.effective_score(),
            "isFinal": bool(self.is_final),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
