import os
import sys
from datetime import datetime

import pytest

# Add parent directory to path to import app and models
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import create_app
from models import (
    db, User, Student, Project, StudentGroup, StudentGroupMembership,
    Task, CommitRecord, PeerReview,
)


@pytest.fixture
def app(request, tmp_path):
    # file_db tests need a second connection that sees committed writes
    uri = f"sqlite:///{tmp_path / 'assessment.db'}" if request.node.get_closest_marker("file_db") else "sqlite://"
    app = create_app(uri, TESTING=True, SECRET_KEY="test-secret")
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


class Builder:
    """Small factory for projects, groups and their activity."""

    def __init__(self):
        self._n = 0

    def _next(self):
        self._n += 1
        return self._n

    def user(self, role="instructor", password="pw123456"):
        n = self._next()
        u = User(name=f"{role.title()} {n}", email=f"{role}{n}@example.com", role=role)
        u.set_password(password)
        db.session.add(u)
        db.session.commit()
        return u

    def student(self, name=None):
        n = self._next()
        s = Student(name=name or f"Student {n}", email=f"student{n}@example.com")
        db.session.add(s)
        db.session.flush()
        return s

    def project(self, **settings):
        n = self._next()
        p = Project(code=f"P{n:04d}", name=f"Project {n}", **settings)
        db.session.add(p)
        db.session.commit()
        return p

    def group(self, project, members, name=None, leader=None):
        g = StudentGroup(project_id=project.id, name=name or f"Group {self._next()}",
                         leader_student_id=leader.id if leader else None)
        db.session.add(g)
        db.session.flush()
        for s in members:
            db.session.add(StudentGroupMembership(group_id=g.id, student_id=s.id))
        db.session.commit()
        return g

    def task(self, group, student, difficulty="MEDIUM", status="COMPLETED",
             deadline=None, completed_at=None):
        t = Task(project_id=group.project_id, group_id=group.id, assignee_student_id=student.id,
                 title=f"Task {self._next()}", difficulty=difficulty, status=status,
                 deadline=deadline, completed_at=completed_at)
        if status == "COMPLETED" and completed_at is None:
            t.completed_at = datetime(2026, 1, 1, 12, 0)
        db.session.add(t)
        db.session.commit()
        return t

    def commit(self, task, additions=0, deletions=0, valid=True):
        c = CommitRecord(group_id=task.group_id, task_id=task.id, commit_sha=f"{self._next():040x}",
                         additions=additions, deletions=deletions, valid=valid)
        db.session.add(c)
        db.session.commit()
        return c

    def review(self, project, reviewer, reviewee, completion, cooperation):
        r = PeerReview(project_id=project.id, reviewer_student_id=reviewer.id,
                       reviewee_student_id=reviewee.id,
                       completion_score=completion, cooperation_score=cooperation)
        db.session.add(r)
        db.session.commit()
        return r

    def team(self, size=3, **settings):
        """Project with one group of `size` students; busiest first."""
        project = self.project(**settings)
        students = [self.student() for _ in range(size)]
        group = self.group(project, students)
        for idx, s in enumerate(students):
            for _ in range(size - idx):
                t = self.task(group, s, difficulty="MEDIUM")
                self.commit(t, additions=20 * (size - idx), deletions=5)
        return project, group, students


@pytest.fixture
def build(app):
    return Builder()


@pytest.fixture
def login(client):
    """Log a user in through the session; returns headers carrying the CSRF token."""
    def _login(user):
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
        token = client.get("/api/csrf").get_json()["data"]["csrfToken"]
        return {"X-CSRF-Token": token}
    return _login
