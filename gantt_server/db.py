import uuid
from datetime import datetime, UTC

from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash

# SQLAlchemy instance
db = SQLAlchemy()


class UserDB(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    display_name = db.Column(db.String(200))
    mail = db.Column(db.String(200))
    department = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(UTC))

    def check_password(self, password):
        return bool(password) and check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'userId': self.username,
            'type': 'local',
            'displayName': self.display_name or self.username,
            'mail': self.mail,
            'department': self.department,
            'isAdmin': self.is_admin,
        }


def find_user(username):
    if not username:
        return None
    return UserDB.query.filter(UserDB.username.ilike(username.strip())).first()


def create_user(username, password, is_admin=False, **profile):
    user = UserDB(
        id=str(uuid.uuid4()),
        username=username.strip(),
        password_hash=generate_password_hash(password),
        is_admin=is_admin,
        display_name=profile.get('display_name'),
        mail=profile.get('mail'),
        department=profile.get('department'),
    )
    db.session.add(user)
    db.session.commit()
    return user


# Utility seed for first admin user if none exists

def ensure_admin_user(username, password):
    if not UserDB.query.filter_by(is_admin=True).first():
        return create_user(username, password, is_admin=True)
    return None
