import argparse, json, secrets, string
from app import create_app
from models import db, User, Student
import ledger
import report

def rand_password(n=10):
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(n))

def _load(json_path):
    with open(json_path, "r") as fh:
        return json.load(fh)

def seed_students(app, json_path):
    """JSON: [{"name":"Ada","email":"ada@school.edu","password":"..."}]"""
    with app.app_context():
        out = []
        for it in _load(json_path):
            name = it["name"].strip()
            email = it["email"].strip().lower()
            pw = it.get("password") or rand_password()
            s = Student.query.filter_by(email=email).first()
            if not s:
                s = Student(name=name, email=email)
                db.session.add(s)
                action = "created"
            else:
                s.name = name
                action = "updated"
            s.set_password(pw)
            out.append({"email": email, "password": pw, "action": action})
        db.session.commit()
        print("Seeded/updated:", len(out))
        for r in out:
            print(f"{r['email']}: {r['password']} ({r['action']})")

def seed_users(app, json_path):
    """
    JSON: [{"name":"Prof X","email":"x@school.edu","role":"instructor|admin|mentor","password":"..."}]
    If password omitted, one is generated and printed.
    """
    with app.app_context():
        out = []
        for it in _load(json_path):
            name = it["name"].strip()
            email = it["email"].strip().lower()
            role = (it.get("role") or "instructor").strip().lower()
            pw = it.get("password") or rand_password()
            u = User.query.filter_by(email=email).first()
            if not u:
                u = User(name=name, email=email, role=role)
                db.session.add(u)
                action = "created"
            else:
                u.name = name
                u.role = role
                action = "updated"
            u.set_password(pw)
            out.append({"email": email, "password": pw, "role": role, "action": action})
        db.session.commit()
        print("Seeded/updated:", len(out))
        for r in out:
            print(f"{r['email']} ({r['role']}): {r['password']} ({r['action']})")

def recalculate(app, project_id):
    with app.app_context():
        rows = ledger.recalculate(project_id)
        print(f"Recalculated {len(rows)} score(s) for project {project_id}")
        for row in rows:
            d = row.to_dict()
            print(f"  {d['fullName'] or d['userId']}: calculated={d['calculatedScore']:.2f} effective={d['effectiveScore']:.2f}")

def finalize(app, project_id):
    with app.app_context():
        rows = ledger.finalize(project_id)
        print(f"Project {project_id} finalized ({len(rows)} score(s) locked)")

def export_report(app, project_id, path):
    with app.app_context():
        payload = report.export_assessment(ledger.project_assessment(project_id))
    with open(path, "wb") as fh:
        fh.write(payload)
    print(f"Wrote {path}")

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    sub = parser.add_subparsers(dest="cmd", required=True)
    for name in ("seed-students", "seed-users"):
        sub.add_parser(name).add_argument("json_path")
    for name in ("recalculate", "finalize"):
        sub.add_parser(name).add_argument("project_id", type=int)
    p = sub.add_parser("export-report")
    p.add_argument("project_id", type=int)
    p.add_argument("path")
    args = parser.parse_args()

    app = create_app()
    if args.cmd == "seed-students":
        seed_students(app, args.json_path)
    elif args.cmd == "seed-users":
        seed_users(app, args.json_path)
    elif args.cmd == "recalculate":
        recalculate(app, args.project_id)
    elif args.cmd == "finalize":
        finalize(app, args.project_id)
    else:
        export_report(app, args.project_id, args.path)
