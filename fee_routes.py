"""
Fee Management Routes for School Admin Portal
JSON endpoints for fee structures, invoice generation, payments and reports
"""

from flask import request, jsonify, g
from flask_login import current_user

from db_single import get_session
from fee_validators import BadRequestError
from fee_helpers import (
    list_structures, get_structure, define_structure, update_structure, delete_structure,
    generate_invoices
)
from fee_ledger_helpers import (
    get_invoice, list_invoices, list_invoice_payments, list_payments,
    record_payment, void_payment, update_invoice, cancel_invoice, issue_invoice,
    reconcile_invoice
)
from fee_report_helpers import get_fee_statistics, get_daily_collection, get_student_fee_summary


CATALOG_ROLES = ('school_admin',)
BILLING_ROLES = ('school_admin', 'accountant')


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequestError("Request body must be a JSON object")
    return data


def _paged(result):
    return {
        'items': [item.to_dict() for item in result['items']],
        'total': result['total'],
        'page': result['page'],
        'per_page': result['per_page'],
        'pages': result['pages'],
    }


def register_fee_routes(school_blueprint, require_school_auth, require_roles):
    """Add fee management routes to school blueprint"""

    # ===== FEE STRUCTURE MANAGEMENT =====

    @school_blueprint.route('/<tenant_slug>/api/fees/structures', methods=['GET'])
    @require_school_auth
    def api_fee_structures(tenant_slug):
        session = get_session()
        try:
            structures = list_structures(
                session, g.current_tenant.id,
                academic_year=request.args.get('academic_year'),
                class_id=request.args.get('class_id', type=int)
            )
            return jsonify({'success': True, 'data': [s.to_dict() for s in structures]})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/structures', methods=['POST'])
    @require_school_auth
    @require_roles(*CATALOG_ROLES)
    def api_create_fee_structure(tenant_slug):
        data = _json_body()
        session = get_session()
        try:
            structure = define_structure(
                session, g.current_tenant.id,
                academic_year=data.get('academic_year'),
                components=data.get('components'),
                name=data.get('name'),
                class_ids=data.get('class_ids'),
                late_fee=data.get('late_fee'),
                description=data.get('description'),
                created_by=current_user.id
            )
            return jsonify({'success': True, 'data': structure.to_dict()}), 201
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/structures/<int:structure_id>', methods=['GET'])
    @require_school_auth
    def api_fee_structure(tenant_slug, structure_id):
        session = get_session()
        try:
            structure = get_structure(session, g.current_tenant.id, structure_id)
            return jsonify({'success': True, 'data': structure.to_dict()})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/structures/<int:structure_id>', methods=['PUT'])
    @require_school_auth
    @require_roles(*CATALOG_ROLES)
    def api_update_fee_structure(tenant_slug, structure_id):
        data = _json_body()
        session = get_session()
        try:
            structure = update_structure(session, g.current_tenant.id, structure_id, data)
            return jsonify({'success': True, 'data': structure.to_dict()})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/structures/<int:structure_id>', methods=['DELETE'])
    @require_school_auth
    @require_roles(*CATALOG_ROLES)
    def api_delete_fee_structure(tenant_slug, structure_id):
        session = get_session()
        try:
            delete_structure(session, g.current_tenant.id, structure_id)
            return jsonify({'success': True, 'message': 'Fee structure deleted'})
        finally:
            session.close()

    # ===== INVOICES =====

    @school_blueprint.route('/<tenant_slug>/api/fees/invoices', methods=['GET'])
    @require_school_auth
    def api_fee_invoices(tenant_slug):
        session = get_session()
        try:
            result = list_invoices(
                session, g.current_tenant.id,
                filters=request.args.to_dict(),
                page=request.args.get('page', 1),
                per_page=request.args.get('per_page')
            )
            return jsonify({'success': True, 'data': _paged(result)})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/invoices/generate', methods=['POST'])
    @require_school_auth
    @require_roles(*BILLING_ROLES)
    def api_generate_fee_invoices(tenant_slug):
        data = _json_body()
        if not data.get('structure_id'):
            raise BadRequestError("structure_id is required")

        session = get_session()
        try:
            result = generate_invoices(
                session, g.current_tenant.id,
                structure_id=data['structure_id'],
                month=data.get('month'),
                due_date=data.get('due_date'),
                academic_year=data.get('academic_year'),
                class_name=data.get('class_name'),
                section=data.get('section'),
                generated_by=current_user.id,
                draft=bool(data.get('draft', False))
            )
            return jsonify({
                'success': True,
                'data': {
                    'generated': [invoice.to_dict() for invoice in result['generated']],
                    'generated_count': len(result['generated']),
                    'skipped': result['skipped'],
                    'errors': result['errors'],
                    'cancelled': result['cancelled'],
                },
                'message': f"{len(result['generated'])} invoice(s) generated, {result['skipped']} skipped"
            })
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/invoices/<int:invoice_id>', methods=['GET'])
    @require_school_auth
    def api_fee_invoice(tenant_slug, invoice_id):
        session = get_session()
        try:
            invoice = get_invoice(session, g.current_tenant.id, invoice_id)
            return jsonify({'success': True, 'data': invoice.to_dict(include_payments=True)})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/invoices/<int:invoice_id>', methods=['PUT'])
    @require_school_auth
    @require_roles(*BILLING_ROLES)
    def api_update_fee_invoice(tenant_slug, invoice_id):
        data = _json_body()
        session = get_session()
        try:
            invoice = update_invoice(session, g.current_tenant.id, invoice_id, data)
            return jsonify({'success': True, 'data': invoice.to_dict()})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/invoices/<int:invoice_id>/cancel', methods=['POST'])
    @require_school_auth
    @require_roles(*BILLING_ROLES)
    def api_cancel_fee_invoice(tenant_slug, invoice_id):
        data = _json_body()
        session = get_session()
        try:
            invoice = cancel_invoice(
                session, g.current_tenant.id, invoice_id,
                reason=data.get('reason'), actor_id=current_user.id
            )
            return jsonify({'success': True, 'data': invoice.to_dict()})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/invoices/<int:invoice_id>/issue', methods=['POST'])
    @require_school_auth
    @require_roles(*BILLING_ROLES)
    def api_issue_fee_invoice(tenant_slug, invoice_id):
        session = get_session()
        try:
            invoice = issue_invoice(session, g.current_tenant.id, invoice_id)
            return jsonify({'success': True, 'data': invoice.to_dict()})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/invoices/<int:invoice_id>/payments', methods=['GET'])
    @require_school_auth
    def api_fee_invoice_payments(tenant_slug, invoice_id):
        session = get_session()
        try:
            payments = list_invoice_payments(session, g.current_tenant.id, invoice_id)
            return jsonify({'success': True, 'data': [p.to_dict() for p in payments]})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/invoices/<int:invoice_id>/reconcile', methods=['GET'])
    @require_school_auth
    def api_reconcile_fee_invoice(tenant_slug, invoice_id):
        session = get_session()
        try:
            return jsonify({'success': True, 'data': reconcile_invoice(session, g.current_tenant.id, invoice_id)})
        finally:
            session.close()

    # ===== PAYMENTS =====

    @school_blueprint.route('/<tenant_slug>/api/fees/payments', methods=['GET'])
    @require_school_auth
    def api_fee_payments(tenant_slug):
        session = get_session()
        try:
            result = list_payments(
                session, g.current_tenant.id,
                filters=request.args.to_dict(),
                page=request.args.get('page', 1),
                per_page=request.args.get('per_page')
            )
            return jsonify({'success': True, 'data': _paged(result)})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/payments', methods=['POST'])
    @require_school_auth
    @require_roles(*BILLING_ROLES)
    def api_record_fee_payment(tenant_slug):
        data = _json_body()
        if not data.get('invoice_id'):
            raise BadRequestError("invoice_id is required")

        session = get_session()
        try:
            payment = record_payment(
                session, g.current_tenant.id,
                invoice_id=data['invoice_id'],
                amount=data.get('amount'),
                method=data.get('payment_method'),
                details=data.get('payment_details'),
                actor_id=current_user.id,
                payment_date=data.get('payment_date'),
                paid_by=data.get('paid_by'),
                remarks=data.get('remarks'),
                idempotency_key=request.headers.get('Idempotency-Key') or data.get('idempotency_key')
            )
            invoice = get_invoice(session, g.current_tenant.id, payment.invoice_id)
            return jsonify({
                'success': True,
                'data': {'payment': payment.to_dict(), 'invoice': invoice.to_dict()},
                'message': f"Payment recorded. Receipt: {payment.receipt_number}"
            }), 201
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/payments/<int:payment_id>/void', methods=['POST'])
    @require_school_auth
    @require_roles(*BILLING_ROLES)
    def api_void_fee_payment(tenant_slug, payment_id):
        data = _json_body()
        session = get_session()
        try:
            payment = void_payment(
                session, g.current_tenant.id, payment_id,
                reason=data.get('reason'), actor_id=current_user.id
            )
            invoice = get_invoice(session, g.current_tenant.id, payment.invoice_id)
            return jsonify({
                'success': True,
                'data': {'payment': payment.to_dict(), 'invoice': invoice.to_dict()}
            })
        finally:
            session.close()

    # ===== REPORTS =====

    @school_blueprint.route('/<tenant_slug>/api/fees/statistics', methods=['GET'])
    @require_school_auth
    def api_fee_statistics(tenant_slug):
        session = get_session()
        try:
            stats = get_fee_statistics(
                session, g.current_tenant.id,
                academic_year=request.args.get('academic_year'),
                month=request.args.get('month')
            )
            return jsonify({'success': True, 'data': stats})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/collection', methods=['GET'])
    @require_school_auth
    def api_fee_collection(tenant_slug):
        session = get_session()
        try:
            rows = get_daily_collection(
                session, g.current_tenant.id,
                start_date=request.args.get('start_date'),
                end_date=request.args.get('end_date')
            )
            return jsonify({'success': True, 'data': rows})
        finally:
            session.close()

    @school_blueprint.route('/<tenant_slug>/api/fees/students/<int:student_id>/summary', methods=['GET'])
    @require_school_auth
    def api_student_fee_summary(tenant_slug, student_id):
        session = get_session()
        try:
            summary = get_student_fee_summary(session, g.current_tenant.id, student_id)
            return jsonify({'success': True, 'data': summary})
        finally:
            session.close()
