from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shared.db import Account, Activity, Base, Contact, Task, User, Workspace, WorkspaceMember


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


def make_session(engine=None):
    engine = engine or make_engine()
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)()


def add_workspace(db, name="Acme Sales", workspace_id=None):
    workspace = Workspace(id=workspace_id, name=name) if workspace_id else Workspace(name=name)
    db.add(workspace)
    db.flush()
    return workspace


def add_member(db, workspace, email="owner@example.com", role="admin"):
    user = db.query(User).filter_by(email=email).one_or_none()
    if not user:
        user = User(email=email, full_name=email.split("@")[0].title())
        db.add(user)
        db.flush()
    db.add(WorkspaceMember(workspace_id=workspace.id, user_id=user.id, role=role))
    db.flush()
    return user


def add_account(db, workspace, account_id=None, **fields):
    fields.setdefault("name", "Acme Inc")
    if account_id:
        fields["id"] = account_id
    account = Account(workspace_id=workspace.id, **fields)
    db.add(account)
    db.flush()
    return account


def add_contact(db, workspace, contact_id=None, **fields):
    if contact_id:
        fields["id"] = contact_id
    contact = Contact(workspace_id=workspace.id, **fields)
    db.add(contact)
    db.flush()
    return contact


def add_activity(db, workspace, **fields):
    fields.setdefault("activity_type", "call")
    activity = Activity(workspace_id=workspace.id, **fields)
    db.add(activity)
    db.flush()
    return activity


def add_task(db, workspace, **fields):
    fields.setdefault("title", "Follow up")
    task = Task(workspace_id=workspace.id, **fields)
    db.add(task)
    db.flush()
    return task
