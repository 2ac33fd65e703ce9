import logging

from flask import Blueprint, g, jsonify
from sqlalchemy import or_

from app_models import db, Direction, Grade, Notification, PushSubscription, School, SchoolPermissions, Subject, User
from auth import permission_required, protect
from data_isolation_helpers import get_json_body, parse_id, require_school_id, visible_school_ids
from errors import ApiError
from forms import SchoolForm, SchoolUpdateForm, as_bool, validate_form

logger = logging.getLogger(__name__)

schools_bp = Blueprint('schools', __name__, url_prefix='/api/schools')

can_manage_schools = permission_required('canManageSchools', message='Not authorized to manage schools')


def visible_schools_query():
    """Schools the caller may see: everything for superadmins, otherwise own school and branches"""
    user = g.user
    if user.role == 'superadmin':
        return School.query

    ids = visible_school_ids(g.school_id) or []
    conditions = [School.id.in_(ids)] if ids else []
    if user.role == 'admin' or user.has_permission('canManageSchools'):
        # Sibling schools registered under the same e-mail domain
        domain = user.email.split('@')[-1].lower()
        conditions.append(School.email_domain == domain)
        conditions.append(School.school_domain == domain.split('.')[0])
    if not conditions:
        return School.query.filter(School.id == -1)
    return School.query.filter(or_(*conditions))


def get_visible_school_or_404(school_id):
    school = visible_schools_query().filter(School.id == school_id).first()
    if not school:
        raise ApiError('School not found', 404)
    return school


def _name_taken(name, exclude_id=None):
    query = School.query.filter(School.name == name)
    if exclude_id:
        query = query.filter(School.id != exclude_id)
    return query.first() is not None


@schools_bp.route('')
@protect
def list_schools():
    """Schools visible to the caller"""
    schools = visible_schools_query().order_by(School.name).all()
    return jsonify([s.to_dict() for s in schools])


@schools_bp.route('/<int:school_id>')
@protect
def get_school(school_id):
    return jsonify(get_visible_school_or_404(school_id).to_dict())


@schools_bp.route('', methods=['POST'])
@protect
@can_manage_schools
def create_school():
    """Create a school; admins create branches of their own school"""
    form = validate_form(SchoolForm())
    body = get_json_body()

    if _name_taken(form.name.data):
        raise ApiError('School branch already exists with this name', 400)

    if g.user.role == 'superadmin':
        parent_id = body.get('parentCluster')
        parent = None
        if parent_id not in (None, ''):
            parent = db.session.get(School, parse_id(parent_id, 'parentCluster'))
            if not parent:
                raise ApiError('Parent school not found', 404)
    else:
        parent = db.session.get(School, require_school_id())

    school = School(
        name=form.name.data,
        address=form.address.data,
        phone=form.phone.data or None,
        email=form.email.data or None,
        website=form.website.data or None,
        logo=form.logo.data or None,
        school_domain=form.schoolDomain.data or None,
        email_domain=form.emailDomain.data or None,
        branch_description=form.branchDescription.data or '',
        is_cluster_school=as_bool(body.get('isClusterSchool')),
        parent_cluster_id=parent.id if parent else None,
    )
    db.session.add(school)
    if parent is not None:
        parent.is_cluster_school = True
    db.session.flush()

    if parent is None:
        SchoolPermissions.create_default(school.id, updated_by_id=g.user.id)

    db.session.commit()
    logger.info("User %s created school %s (%s)", g.user.id, school.id, school.name)
    return jsonify(school.to_dict()), 201


@schools_bp.route('/<int:school_id>', methods=['PUT'])
@protect
@can_manage_schools
def update_school(school_id):
    school = get_visible_school_or_404(school_id)
    form = validate_form(SchoolUpdateForm())
    body = get_json_body()

    if 'name' in body and form.name.data and form.name.data != school.name:
        if _name_taken(form.name.data, exclude_id=school.id):
            raise ApiError('School branch already exists with this name', 400)
        school.name = form.name.data
    if 'address' in body and form.address.data:
        school.address = form.address.data
    for field, attr in (('phone', 'phone'), ('email', 'email'), ('website', 'website'), ('logo', 'logo'),
                        ('schoolDomain', 'school_domain'), ('emailDomain', 'email_domain')):
        if field in body:
            setattr(school, attr, getattr(form, field).data or None)
    if 'branchDescription' in body:
        school.branch_description = form.branchDescription.data or ''
    if 'isClusterSchool' in body:
        school.is_cluster_school = as_bool(body.get('isClusterSchool'))
    if 'active' in body:
        if g.user.role != 'superadmin' and school.id == g.school_id:
            raise ApiError('Only a superadmin can change the status of this school', 403)
        school.is_active = as_bool(body.get('active'), True)

    db.session.commit()
    return jsonify(school.to_dict())


@schools_bp.route('/<int:school_id>', methods=['DELETE'])
@protect
@can_manage_schools
def delete_school(school_id):
    school = get_visible_school_or_404(school_id)
    if g.user.role != 'superadmin' and school.id == g.school_id:
        raise ApiError('You cannot delete your own school', 403)
    if User.query.filter_by(school_id=school.id).first():
        raise ApiError('Cannot delete a school that still has users', 400)

    User.query.filter_by(branch_id=school.id).update({'branch_id': None})
    School.query.filter_by(parent_cluster_id=school.id).update({'parent_cluster_id': None})
    Grade.query.filter_by(school_id=school.id).delete()
    for model in (Subject, Direction, Notification):
        for record in model.query.filter_by(school_id=school.id).all():
            db.session.delete(record)
    PushSubscription.query.filter_by(school_id=school.id).delete()
    db.session.delete(school)
    db.session.commit()

    logger.info("User %s deleted school %s", g.user.id, school_id)
    return jsonify({'message': 'School removed', 'id': school_id})
