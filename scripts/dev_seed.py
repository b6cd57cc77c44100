# scripts/dev_seed.py
import os, sys
from datetime import datetime, timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app
from models import (
    db, User, Student, Project, StudentGroup, StudentGroupMembership,
    Task, CommitRecord, PeerReview,
)

def upsert_user(name, email, role, password):
    u = User.query.filter_by(email=email).one_or_none()
    if u is None:
        u = User(name=name, email=email, role=role)
        u.set_password(password)
        db.session.add(u)
        print(f"[seed] created {role} user: {email}")
    else:
        print(f"[seed] {role} user already exists: {email}")
    return u

def upsert_student(name, email, password):
    s = Student.query.filter_by(email=email).one_or_none()
    if s is None:
        s = Student(name=name, email=email)
        s.set_password(password)
        db.session.add(s)
        print(f"[seed] created student: {email}")
    return s

def seed_project(instructor, students):
    project = Project.query.filter_by(code="DEMO01").one_or_none()
    if project is not None:
        print("[seed] demo project already exists")
        return project
    project = Project(code="DEMO01", name="Demo Capstone", instructor=instructor)
    db.session.add(project)
    db.session.flush()

    today = datetime.now().date()
    halves = [students[:3], students[3:]]
    for g_idx, members in enumerate(halves, 1):
        group = StudentGroup(project_id=project.id, name=f"Team {g_idx}", leader_student_id=members[0].id)
        db.session.add(group)
        db.session.flush()
        for s in members:
            db.session.add(StudentGroupMembership(group_id=group.id, student_id=s.id))
        # uneven workload on purpose: the last member of each team does little
        for s_idx, s in enumerate(members):
            for t_idx in range(len(members) - s_idx):
                done = t_idx % 2 == 0
                task = Task(
                    project_id=project.id, group_id=group.id, assignee_student_id=s.id,
                    title=f"{s.name.split()[0]} task {t_idx + 1}",
                    difficulty=("EASY", "MEDIUM", "HARD")[t_idx % 3],
                    status="COMPLETED" if done else "IN_PROGRESS",
                    deadline=today + timedelta(days=2 * t_idx - 1),
                    completed_at=datetime.now() - timedelta(days=1) if done else None,
                )
                db.session.add(task)
                db.session.flush()
                if done:
                    db.session.add(CommitRecord(
                        group_id=group.id, task_id=task.id, commit_sha=f"{task.id:08x}",
                        author_email=s.email, message=task.title,
                        additions=40 * (t_idx + 1), deletions=10 * t_idx,
                    ))
        for reviewer in members:
            for reviewee in members:
                if reviewer.id != reviewee.id:
                    db.session.add(PeerReview(
                        project_id=project.id, reviewer_student_id=reviewer.id,
                        reviewee_student_id=reviewee.id,
                        completion_score=5 - members.index(reviewee),
                        cooperation_score=4,
                    ))
    print(f"[seed] created project {project.code} with {len(halves)} groups")
    return project

def main():
    app = create_app()
    with app.app_context():
        db.create_all()   # safe if tables already exist

        instructor = upsert_user("Ines Instructor", "instructor@example.com", "instructor", "instructor123")
        upsert_user("Alice Admin", "admin@example.com", "admin", "admin123")
        upsert_user("Mark Mentor", "mentor@example.com", "mentor", "mentor123")
        names = ["Amina Benali", "Bilal Idrissi", "Chaima Tazi", "Driss Alaoui", "Eya Mansouri", "Farid Kettani"]
        students = [
            upsert_student(n, f"{n.split()[0].lower()}@example.com", "student123") for n in names
        ]
        db.session.flush()
        seed_project(instructor, students)

        db.session.commit()
        print("[seed] done.")

if __name__ == "__main__":
    main()
