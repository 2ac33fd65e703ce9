"""
Request payload validation.

Flask-WTF feeds JSON bodies of POST/PUT/PATCH/DELETE requests into these
forms; CSRF is off since the API authenticates with bearer tokens.
"""
from datetime import datetime, timezone

from flask import request
from flask_wtf import FlaskForm
from werkzeug.datastructures import ImmutableMultiDict
from wtforms import Field, StringField
from wtforms.validators import AnyOf, DataRequired, Length, NumberRange, Optional, Regexp, StopValidation

from app_models import ROLES, TARGET_ROLES
from data_isolation_helpers import get_json_body
from errors import ApiError

EMAIL_RE = r'^[^@\s]+@[^@\s]+\.[^@\s]+$'
PHONE_RE = r'^[\d\s\-+()]+$'
SUBMIT_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')


def to_text(value):
    return str(value) if value is not None else None


def strip_value(value):
    return str(value).strip() if value is not None else None


def lower_value(value):
    return str(value).strip().lower() if value is not None else None


def parse_datetime(value):
    """Naive UTC datetime from an ISO-8601 date or timestamp"""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError('empty date')
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def as_bool(value, default=False):
    """Interpret JSON booleans and their common string spellings"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


class Present:
    """Like DataRequired, but accepts falsy values such as 0"""

    def __init__(self, message=None):
        self.message = message

    def __call__(self, form, field):
        if field.data is None or (isinstance(field.data, str) and not field.data.strip()):
            raise StopValidation(self.message or 'This field is required.')


class NumberField(Field):
    """Numeric JSON value"""

    def process_formdata(self, valuelist):
        if not valuelist or valuelist[0] is None or valuelist[0] == '':
            self.data = None
            return
        raw = valuelist[0]
        if isinstance(raw, bool):
            self.data = None
            raise ValueError('Not a valid number')
        try:
            self.data = float(raw)
        except (TypeError, ValueError):
            self.data = None
            raise ValueError('Not a valid number')


class ApiForm(FlaskForm):
    class Meta:
        csrf = False

    def __init__(self, *args, **kwargs):
        # Flask-WTF wraps any JSON value; only objects map to form fields
        if not args and 'formdata' not in kwargs and request.is_json and request.method in SUBMIT_METHODS:
            kwargs['formdata'] = ImmutableMultiDict(get_json_body())
        super().__init__(*args, **kwargs)


def validate_form(form):
    """Run validators, raising the first error as a 400"""
    if form.validate():
        return form
    for errors in form.errors.values():
        if errors:
            message = errors[0]
            break
    else:
        message = 'Invalid request data'
    raise ApiError(message, 400)


# Users

class RegisterForm(ApiForm):
    name = StringField(filters=[strip_value], validators=[
        DataRequired('Please provide name, email and password'), Length(max=120)])
    email = StringField(filters=[lower_value], validators=[
        DataRequired('Please provide name, email and password'),
        Regexp(EMAIL_RE, message='Please provide a valid email')])
    password = StringField(filters=[to_text], validators=[
        DataRequired('Please provide name, email and password'),
        Length(min=6, message='Password must be at least 6 characters')])
    role = StringField(validators=[Optional(), AnyOf(('student', 'parent'), message='Invalid role for registration')])
    mobilePhone = StringField(filters=[strip_value], validators=[
        Optional(), Regexp(PHONE_RE, message='Please provide a valid phone number')])


class LoginForm(ApiForm):
    email = StringField(filters=[lower_value], validators=[DataRequired('Please provide email and password')])
    password = StringField(filters=[to_text], validators=[DataRequired('Please provide email and password')])


class AdminUserForm(ApiForm):
    name = StringField(filters=[strip_value], validators=[
        DataRequired('Please provide name, email, password and role'), Length(max=120)])
    email = StringField(filters=[lower_value], validators=[
        DataRequired('Please provide name, email, password and role'),
        Regexp(EMAIL_RE, message='Please provide a valid email')])
    password = StringField(filters=[to_text], validators=[
        DataRequired('Please provide name, email, password and role'),
        Length(min=6, message='Password must be at least 6 characters')])
    role = StringField(validators=[
        DataRequired('Please provide name, email, password and role'),
        AnyOf([r for r in ROLES if r != 'superadmin'], message='Invalid role')])
    mobilePhone = StringField(filters=[strip_value], validators=[
        Optional(), Regexp(PHONE_RE, message='Please provide a valid phone number')])
    personalEmail = StringField(filters=[lower_value], validators=[
        Optional(), Regexp(EMAIL_RE, message='Please provide a valid personal email')])


class UserUpdateForm(ApiForm):
    name = StringField(filters=[strip_value], validators=[Optional(), Length(max=120)])
    email = StringField(filters=[lower_value], validators=[
        Optional(), Regexp(EMAIL_RE, message='Please provide a valid email')])
    password = StringField(filters=[to_text], validators=[
        Optional(), Length(min=6, message='Password must be at least 6 characters')])
    role = StringField(validators=[Optional(), AnyOf([r for r in ROLES if r != 'superadmin'], message='Invalid role')])
    mobilePhone = StringField(filters=[strip_value], validators=[
        Optional(), Regexp(PHONE_RE, message='Please provide a valid phone number')])
    personalEmail = StringField(filters=[lower_value], validators=[
        Optional(), Regexp(EMAIL_RE, message='Please provide a valid personal email')])


class ProfileForm(ApiForm):
    name = StringField(filters=[strip_value], validators=[Optional(), Length(max=120)])
    mobilePhone = StringField(filters=[strip_value], validators=[
        Optional(), Regexp(PHONE_RE, message='Please provide a valid phone number')])
    personalEmail = StringField(filters=[lower_value], validators=[
        Optional(), Regexp(EMAIL_RE, message='Please provide a valid personal email')])


class ChangePasswordForm(ApiForm):
    currentPassword = StringField(filters=[to_text], validators=[DataRequired('Please provide current and new password')])
    newPassword = StringField(filters=[to_text], validators=[
        DataRequired('Please provide current and new password'),
        Length(min=6, message='Password must be at least 6 characters')])


class ParentAccountForm(ApiForm):
    parentName = StringField(filters=[strip_value], validators=[
        DataRequired('Student IDs (array), parent name, email, and password are required'), Length(max=120)])
    parentEmail = StringField(filters=[lower_value], validators=[
        DataRequired('Student IDs (array), parent name, email, and password are required'),
        Regexp(EMAIL_RE, message='Please provide a valid email')])
    parentPassword = StringField(filters=[to_text], validators=[
        DataRequired('Student IDs (array), parent name, email, and password are required'),
        Length(min=6, message='Password must be at least 6 characters')])
    parentMobilePhone = StringField(filters=[strip_value], validators=[
        Optional(), Regexp(PHONE_RE, message='Please provide a valid phone number')])
    parentPersonalEmail = StringField(filters=[lower_value], validators=[
        Optional(), Regexp(EMAIL_RE, message='Please provide a valid personal email')])


# Schools

class SchoolForm(ApiForm):
    name = StringField(filters=[strip_value], validators=[
        DataRequired('Please provide school name and address'), Length(max=200)])
    address = StringField(filters=[strip_value], validators=[
        DataRequired('Please provide school name and address'), Length(max=500)])
    phone = StringField(filters=[strip_value], validators=[
        Optional(), Regexp(PHONE_RE, message='Please provide a valid phone number')])
    email = StringField(filters=[lower_value], validators=[
        Optional(), Regexp(EMAIL_RE, message='Please provide a valid email')])
    website = StringField(filters=[strip_value], validators=[Optional(), Length(max=200)])
    logo = StringField(filters=[strip_value], validators=[Optional(), Length(max=500)])
    schoolDomain = StringField(filters=[lower_value], validators=[Optional(), Length(max=120)])
    emailDomain = StringField(filters=[lower_value], validators=[Optional(), Length(max=120)])
    branchDescription = StringField(filters=[strip_value], validators=[Optional(), Length(max=500)])


class SchoolUpdateForm(SchoolForm):
    name = StringField(filters=[strip_value], validators=[Optional(), Length(max=200)])
    address = StringField(filters=[strip_value], validators=[Optional(), Length(max=500)])


# Directions and subjects

class DirectionForm(ApiForm):
    name = StringField(filters=[strip_value], validators=[
        DataRequired('Please provide a direction name'), Length(max=120)])
    description = StringField(filters=[strip_value], validators=[Optional(), Length(max=2000)])


class SubjectForm(ApiForm):
    name = StringField(filters=[strip_value], validators=[
        DataRequired('Please provide a subject name'), Length(max=120)])
    description = StringField(filters=[strip_value], validators=[Optional(), Length(max=2000)])


# Grades

class GradeForm(ApiForm):
    value = NumberField(validators=[
        Present('Please provide student, subject, and value'),
        NumberRange(min=0, max=100, message='Grade value must be between 0 and 100')])
    description = StringField(filters=[strip_value], validators=[Optional(), Length(max=1000)])


class GradeUpdateForm(ApiForm):
    value = NumberField(validators=[
        Optional(), NumberRange(min=0, max=100, message='Grade value must be between 0 and 100')])
    description = StringField(filters=[strip_value], validators=[Optional(), Length(max=1000)])


# Notifications

class NotificationForm(ApiForm):
    title = StringField(filters=[strip_value], validators=[
        DataRequired('Please provide title and message'),
        Length(max=200, message='Title cannot exceed 200 characters')])
    message = StringField(filters=[strip_value], validators=[
        DataRequired('Please provide title and message'),
        Length(max=2000, message='Message cannot exceed 2000 characters')])
    targetRole = StringField(validators=[Optional(), AnyOf(TARGET_ROLES, message='Invalid target role')])


class NotificationUpdateForm(ApiForm):
    title = StringField(filters=[strip_value], validators=[
        Optional(), Length(max=200, message='Title cannot exceed 200 characters')])
    message = StringField(filters=[strip_value], validators=[
        Optional(), Length(max=2000, message='Message cannot exceed 2000 characters')])
