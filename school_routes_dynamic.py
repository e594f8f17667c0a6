"""
Dynamic School Routes for Single Database Multi-Tenant System
Handles all school-specific routes with a single blueprint
"""

from functools import wraps
import logging

from flask import Blueprint, request, g, jsonify
from flask_login import login_user, logout_user, current_user

from db_single import get_session
from models import User
from fee_validators import FeeError

logger = logging.getLogger(__name__)


def create_school_blueprint():
    """Create a single blueprint that handles all school tenants dynamically"""

    school_bp = Blueprint('school', __name__)

    def require_school_auth(f):
        """Decorator to require school authentication"""
        def decorated_function(*args, **kwargs):
            if not hasattr(g, 'current_tenant'):
                return jsonify({'success': False, 'error': 'not_found', 'message': 'School not found'}), 404

            if not current_user.is_authenticated:
                return jsonify({'success': False, 'error': 'unauthorized', 'message': 'Login required'}), 401

            # Check if user belongs to current tenant
            if current_user.tenant_id != g.current_tenant.id:
                logger.warning(f"User {current_user.id} denied access to school {g.current_tenant.slug}")
                return jsonify({'success': False, 'error': 'forbidden', 'message': 'Access denied - wrong school'}), 403

            return f(*args, **kwargs)

        decorated_function.__name__ = f.__name__
        return decorated_function

    def require_roles(*roles):
        """Decorator to restrict a route to the given user roles"""
        def decorator(f):
            @wraps(f)
            def decorated_function(*args, **kwargs):
                if current_user.role not in roles:
                    return jsonify({
                        'success': False,
                        'error': 'forbidden',
                        'message': f"Requires role: {' or '.join(roles)}"
                    }), 403
                return f(*args, **kwargs)
            return decorated_function
        return decorator

    @school_bp.errorhandler(FeeError)
    def handle_fee_error(error):
        return jsonify(error.to_dict()), error.status_code

    @school_bp.route('/<tenant_slug>/login', methods=['POST'])
    def login(tenant_slug):
        """School user login"""
        if not hasattr(g, 'current_tenant'):
            return jsonify({'success': False, 'error': 'not_found', 'message': 'School not found or inactive'}), 404

        data = request.get_json(silent=True) or request.form
        username = (data.get('username') or '').strip()
        password = (data.get('password') or '').strip()

        if not username or not password:
            return jsonify({'success': False, 'error': 'bad_request', 'message': 'Please enter both username and password'}), 400

        session_db = get_session()
        try:
            # Find user in this school
            user = session_db.query(User).filter_by(
                username=username,
                tenant_id=g.current_tenant.id,
                is_active=True
            ).first()

            if user and user.check_password(password):
                login_user(user, remember=True)
                logger.info(f"User {user.username} logged in to {tenant_slug}")
                return jsonify({
                    'success': True,
                    'data': {'id': user.id, 'username': user.username, 'role': user.role, 'name': user.full_name}
                })

            logger.warning(f"Failed login for {username} at {tenant_slug}")
            return jsonify({'success': False, 'error': 'unauthorized', 'message': 'Invalid username or password'}), 401
        finally:
            session_db.close()

    @school_bp.route('/<tenant_slug>/logout', methods=['POST'])
    def logout(tenant_slug):
        """Logout school user"""
        logout_user()
        return jsonify({'success': True, 'message': 'You have been logged out successfully'})

    # Register fee management routes
    from fee_routes import register_fee_routes
    register_fee_routes(school_bp, require_school_auth, require_roles)

    return school_bp
