# Database Models
import re
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

ROLES = ('superadmin', 'admin', 'secretary', 'teacher', 'student', 'parent')
TARGET_ROLES = ('student', 'teacher', 'admin', 'all')

SECRETARY_PERMISSION_KEYS = (
    'canManageGrades',
    'canSendNotifications',
    'canManageUsers',
    'canManageSchools',
    'canManageDirections',
    'canManageSubjects',
    'canAccessStudentProgress',
)

# Feature key -> label shown in the superadmin console
FEATURE_LABELS = {
    'enableGrades': 'Grade Management',
    'enableClasses': 'Class Management',
    'enableSubjects': 'Subject Management',
    'enableStudents': 'Student Management',
    'enableTeachers': 'Teacher Management',
    'enableNotifications': 'Notifications',
    'enableContactDeveloper': 'Contact Developer',
    'enableContact': 'Contact Messages',
    'enableCalendar': 'Calendar',
    'enableSchedule': 'Schedule',
    'enableRatingSystem': 'Rating System',
    'enableAnalytics': 'Analytics',
    'enableUserManagement': 'User Management',
    'enableSchoolSettings': 'School Settings',
    'enableSystemMaintenance': 'System Maintenance',
    'enableBugReports': 'Bug Reports',
    'enableDirections': 'Direction Management',
    'enablePatchNotes': 'Patch Notes',
    'enableStudentProgress': 'Student Progress',
}


def isoformat(value):
    return value.isoformat() + 'Z' if value else None


subject_teachers = db.Table(
    'subject_teachers',
    db.Column('subject_id', db.Integer, db.ForeignKey('subject.id', ondelete='CASCADE'), primary_key=True),
    db.Column('user_id', db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), primary_key=True),
)

subject_directions = db.Table(
    'subject_directions',
    db.Column('subject_id', db.Integer, db.ForeignKey('subject.id', ondelete='CASCADE'), primary_key=True),
    db.Column('direction_id', db.Integer, db.ForeignKey('direction.id', ondelete='CASCADE'), primary_key=True),
)

parent_students = db.Table(
    'parent_students',
    db.Column('parent_id', db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), primary_key=True),
    db.Column('student_id', db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), primary_key=True),
)

notification_branches = db.Table(
    'notification_branches',
    db.Column('notification_id', db.Integer, db.ForeignKey('notification.id', ondelete='CASCADE'), primary_key=True),
    db.Column('school_id', db.Integer, db.ForeignKey('school.id', ondelete='CASCADE'), primary_key=True),
)


class School(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    address = db.Column(db.String(500), nullable=False)
    phone = db.Column(db.String(50))
    email = db.Column(db.String(120))
    website = db.Column(db.String(200))
    logo = db.Column(db.String(500))
    school_domain = db.Column(db.String(120))
    email_domain = db.Column(db.String(120), index=True)
    parent_cluster_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    is_cluster_school = db.Column(db.Boolean, default=False)
    branch_description = db.Column(db.String(500), default='')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    parent_cluster = db.relationship('School', remote_side=[id], backref='branches')

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Derive domains from the name when they are not given
        if not self.school_domain and self.name:
            self.school_domain = self.default_school_domain(self.name)
        if not self.email_domain and self.school_domain:
            self.email_domain = f"{self.school_domain}.edu"

    @staticmethod
    def default_school_domain(name):
        return re.sub(r'\s+', '', name.lower())

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'phone': self.phone,
            'email': self.email,
            'website': self.website,
            'logo': self.logo,
            'schoolDomain': self.school_domain,
            'emailDomain': self.email_domain,
            'parentCluster': self.parent_cluster_id,
            'active': self.is_active,
            'isClusterSchool': self.is_cluster_school,
            'branchDescription': self.branch_description or '',
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }


class Direction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, default='')
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    school = db.relationship('School', backref='directions')

    __table_args__ = (db.UniqueConstraint('name', 'school_id', name='unique_direction_name_per_school'),)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description or '',
            'schoolId': self.school_id,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), nullable=False, index=True)
    password = db.Column(db.String(200), nullable=False)  # bcrypt hash
    role = db.Column(db.String(20), nullable=False, default='student')
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=True, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=True)
    direction_id = db.Column(db.Integer, db.ForeignKey('direction.id', ondelete='SET NULL'), nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    mobile_phone = db.Column(db.String(40), default='')
    personal_email = db.Column(db.String(120), default='')
    secretary_permissions = db.Column(db.JSON, default=dict)
    push_notification_enabled = db.Column(db.Boolean, default=True)
    require_password_change = db.Column(db.Boolean, default=False)
    is_first_login = db.Column(db.Boolean, default=True)
    last_password_change = db.Column(db.DateTime, nullable=True)
    last_login = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    school = db.relationship('School', foreign_keys=[school_id], backref='users')
    branch = db.relationship('School', foreign_keys=[branch_id])
    direction = db.relationship('Direction', backref='students')
    children = db.relationship(
        'User', secondary=parent_students,
        primaryjoin=lambda: User.id == parent_students.c.parent_id,
        secondaryjoin=lambda: User.id == parent_students.c.student_id,
        backref='parents', order_by=lambda: User.name,
    )

    __table_args__ = (db.UniqueConstraint('email', 'school_id', name='unique_user_email_per_school'),)

    def has_permission(self, key):
        """True for secretaries holding the given permission flag"""
        return self.role == 'secretary' and bool((self.secretary_permissions or {}).get(key))

    def permissions_dict(self):
        granted = self.secretary_permissions or {}
        return {key: bool(granted.get(key, False)) for key in SECRETARY_PERMISSION_KEYS}

    def to_dict(self):
        data = {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'schoolId': self.school_id,
            'branchId': self.branch_id,
            'directionId': self.direction_id,
            'active': self.is_active,
            'mobilePhone': self.mobile_phone or '',
            'personalEmail': self.personal_email or '',
            'secretaryPermissions': self.permissions_dict(),
            'pushNotificationEnabled': self.push_notification_enabled,
            'requirePasswordChange': self.require_password_change,
            'isFirstLogin': self.is_first_login,
            'lastLogin': isoformat(self.last_login),
            'createdAt': isoformat(self.created_at),
        }
        if self.role == 'parent':
            data['linkedStudentIds'] = [child.id for child in self.children]
        return data

    def to_summary(self):
        return {'id': self.id, 'name': self.name, 'email': self.email, 'role': self.role}


class Subject(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, default='')
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    school = db.relationship('School', backref='subjects')
    teachers = db.relationship('User', secondary=subject_teachers, backref='teaching_subjects')
    directions = db.relationship('Direction', secondary=subject_directions, backref='subjects')

    __table_args__ = (db.UniqueConstraint('name', 'school_id', name='unique_subject_name_per_school'),)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description or '',
            'schoolId': self.school_id,
            'teachers': [t.to_summary() for t in self.teachers],
            'directions': [{'id': d.id, 'name': d.name} for d in self.directions],
            'createdAt': isoformat(self.created_at),
        }


class Grade(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id', ondelete='CASCADE'), nullable=False, index=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    value = db.Column(db.Float, nullable=False)
    description = db.Column(db.Text, default='')
    date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    student = db.relationship('User', foreign_keys=[student_id])
    teacher = db.relationship('User', foreign_keys=[teacher_id])
    subject = db.relationship('Subject')

    __table_args__ = (
        db.UniqueConstraint('student_id', 'subject_id', 'date', 'school_id', name='unique_grade_per_day'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'student': self.student.to_summary() if self.student else self.student_id,
            'subject': {'id': self.subject.id, 'name': self.subject.name} if self.subject else self.subject_id,
            'teacher': self.teacher.to_summary() if self.teacher else self.teacher_id,
            'value': self.value,
            'description': self.description or '',
            'date': isoformat(self.date),
            'schoolId': self.school_id,
            'createdAt': isoformat(self.created_at),
        }


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.String(2000), nullable=False)
    sender_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    sender_name = db.Column(db.String(120))
    sender_role = db.Column(db.String(20))
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=True, index=True)
    target_role = db.Column(db.String(20), default='all')
    send_to_all = db.Column(db.Boolean, default=False)
    urgent = db.Column(db.Boolean, default=False)
    is_important = db.Column(db.Boolean, default=False)
    expires_at = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), default='sent')
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sender = db.relationship('User')
    school_branches = db.relationship('School', secondary=notification_branches)
    recipients = db.relationship('NotificationRecipient', backref='notification',
                                 cascade='all, delete-orphan', lazy='selectin')

    def recipient_entry(self, user_id):
        for entry in self.recipients:
            if entry.user_id == user_id:
                return entry
        return None

    def delivery_stats(self):
        return {
            'totalRecipients': len(self.recipients),
            'read': sum(1 for r in self.recipients if r.is_read),
            'seen': sum(1 for r in self.recipients if r.is_seen),
        }

    def to_dict(self, viewer_id=None, include_recipients=False):
        data = {
            'id': self.id,
            'title': self.title,
            'message': self.message,
            'sender': {'id': self.sender_id, 'name': self.sender_name, 'role': self.sender_role},
            'schoolId': self.school_id,
            'targetRole': self.target_role,
            'sendToAll': self.send_to_all,
            'urgent': self.urgent,
            'isImportant': self.is_important,
            'expiresAt': isoformat(self.expires_at),
            'status': self.status,
            'schoolBranches': [{'id': s.id, 'name': s.name} for s in self.school_branches],
            'deliveryStats': self.delivery_stats(),
            'createdAt': isoformat(self.created_at),
        }
        if viewer_id is not None:
            entry = self.recipient_entry(viewer_id)
            data['isRead'] = bool(entry and entry.is_read)
            data['isSeen'] = bool(entry and entry.is_seen)
        if include_recipients:
            data['recipients'] = [r.to_dict() for r in self.recipients]
        return data


class NotificationRecipient(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    notification_id = db.Column(db.Integer, db.ForeignKey('notification.id', ondelete='CASCADE'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime, nullable=True)
    is_seen = db.Column(db.Boolean, default=False)
    seen_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship('User')

    __table_args__ = (db.UniqueConstraint('notification_id', 'user_id', name='unique_notification_recipient'),)

    def to_dict(self):
        return {
            'user': self.user.to_summary() if self.user else self.user_id,
            'isRead': self.is_read,
            'readAt': isoformat(self.read_at),
            'isSeen': self.is_seen,
            'seenAt': isoformat(self.seen_at),
        }


class PushSubscription(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='CASCADE'), nullable=False, index=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id'), nullable=True, index=True)
    endpoint = db.Column(db.String(1000), nullable=False, unique=True)
    p256dh = db.Column(db.String(200), nullable=False)
    auth = db.Column(db.String(100), nullable=False)
    expiration_time = db.Column(db.DateTime, nullable=True)
    user_agent = db.Column(db.String(500), default='')
    platform = db.Column(db.JSON, default=dict)
    is_active = db.Column(db.Boolean, default=True)
    total_pushes = db.Column(db.Integer, default=0)
    successful_pushes = db.Column(db.Integer, default=0)
    failed_pushes = db.Column(db.Integer, default=0)
    last_push_sent = db.Column(db.DateTime, nullable=True)
    last_push_success = db.Column(db.DateTime, nullable=True)
    last_error_message = db.Column(db.String(500), nullable=True)
    last_error_status = db.Column(db.Integer, nullable=True)
    last_error_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_used = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', backref=db.backref('push_subscriptions', cascade='all, delete-orphan'))

    def subscription_info(self):
        """Shape expected by pywebpush"""
        return {'endpoint': self.endpoint, 'keys': {'p256dh': self.p256dh, 'auth': self.auth}}

    def update_stats(self, success, error_message=None, status_code=None):
        now = datetime.utcnow()
        self.total_pushes = (self.total_pushes or 0) + 1
        self.last_push_sent = now
        if success:
            self.successful_pushes = (self.successful_pushes or 0) + 1
            self.last_push_success = now
            self.last_used = now
        else:
            self.failed_pushes = (self.failed_pushes or 0) + 1
            self.last_error_message = (error_message or '')[:500]
            self.last_error_status = status_code
            self.last_error_at = now

    def is_expired(self):
        return bool(self.expiration_time and self.expiration_time < datetime.utcnow())

    def platform_summary(self):
        platform = self.platform or {}
        if platform.get('isIOS'):
            os_name = 'iOS'
        elif platform.get('isAndroid'):
            os_name = 'Android'
        elif platform.get('isWindows'):
            os_name = 'Windows'
        else:
            os_name = platform.get('osName') or 'Unknown'
        browser = platform.get('browserName') or 'Unknown'
        summary = f"{browser} on {os_name}"
        if platform.get('isPWA'):
            summary += ' (PWA)'
        return summary

    def to_dict(self):
        return {
            'id': self.id,
            'endpoint': self.endpoint[:50] + '...' if len(self.endpoint) > 50 else self.endpoint,
            'platform': self.platform_summary(),
            'isActive': self.is_active,
            'userAgent': self.user_agent or '',
            'stats': {
                'totalPushes': self.total_pushes or 0,
                'successfulPushes': self.successful_pushes or 0,
                'failedPushes': self.failed_pushes or 0,
                'lastPushSent': isoformat(self.last_push_sent),
                'lastPushSuccess': isoformat(self.last_push_success),
            },
            'createdAt': isoformat(self.created_at),
            'lastUsed': isoformat(self.last_used),
        }


class SchoolPermissions(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('school.id', ondelete='CASCADE'), nullable=False, unique=True)
    features = db.Column(db.JSON, nullable=False, default=dict)
    updated_by_id = db.Column(db.Integer, db.ForeignKey('user.id', ondelete='SET NULL'), nullable=True)
    version = db.Column(db.Integer, default=1)
    last_updated = db.Column(db.DateTime, default=datetime.utcnow)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    school = db.relationship('School', backref=db.backref('permissions', uselist=False, cascade='all, delete-orphan'))
    updated_by = db.relationship('User')

    @staticmethod
    def get_available_features():
        return dict(FEATURE_LABELS)

    @staticmethod
    def default_features():
        return {key: True for key in FEATURE_LABELS}

    @classmethod
    def create_default(cls, school_id, updated_by_id=None):
        permissions = cls(school_id=school_id, features=cls.default_features(), updated_by_id=updated_by_id)
        db.session.add(permissions)
        return permissions

    @classmethod
    def get_for_school(cls, school_id):
        """Fetch the permissions row for a school, creating defaults when missing"""
        permissions = cls.query.filter_by(school_id=school_id).first()
        if permissions is None:
            permissions = cls.create_default(school_id)
            db.session.commit()
        return permissions

    def is_enabled(self, key):
        return bool((self.features or {}).get(key, True))

    def merged_features(self):
        merged = self.default_features()
        merged.update({k: bool(v) for k, v in (self.features or {}).items() if k in FEATURE_LABELS})
        return merged

    def to_dict(self):
        return {
            'id': self.id,
            'schoolId': self.school_id,
            'features': self.merged_features(),
            'updatedBy': self.updated_by.to_summary() if self.updated_by else None,
            'version': self.version,
            'lastUpdated': isoformat(self.last_updated),
        }
