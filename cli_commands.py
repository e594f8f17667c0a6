"""
Flask CLI commands for single database multi-tenant system
"""

import signal
import threading
import click
from flask import Flask
from db_single import create_school, list_schools, get_session
from init_db import run_on_startup
from models import User, Tenant
from fee_models import FeeInvoice
from fee_validators import FeeError
from fee_helpers import generate_invoices
from fee_ledger_helpers import refresh_invoice_statuses, reconcile_invoice
import logging

logger = logging.getLogger(__name__)

STAFF_ROLES = ('school_admin', 'accountant')


def _get_school(session, slug):
    school = session.query(Tenant).filter_by(slug=slug).first()
    if not school:
        raise click.ClickException(f"School with slug '{slug}' not found")
    return school


def register_cli_commands(app: Flask):
    """Register CLI commands with the Flask app"""

    @app.cli.command("setup-db")
    def setup_db_command():
        """Create database tables"""
        click.echo("🚀 Setting up database...")
        if run_on_startup():
            click.echo("✅ Database setup completed successfully!")
        else:
            click.echo("❌ Database setup failed!")

    @app.cli.command("add-school")
    @click.option("--slug", required=True, help="URL-friendly school identifier (e.g., xyz)")
    @click.option("--name", required=True, help="Full school name (e.g., 'XYZ Public School')")
    @click.option("--sample-data", is_flag=True, help="Create a sample class, students and fee structure")
    def add_school_command(slug, name, sample_data):
        """Add a new school to the system"""
        click.echo(f"🏫 Creating school: {name} ({slug})")

        school_data = {}
        if sample_data:
            school_data['create_sample_data'] = True

        success, message = create_school(slug, name, **school_data)

        if success:
            click.echo(f"✅ {message}")
            click.echo(f"🌐 API base: /{slug}/api/fees/")
        else:
            click.echo(f"❌ {message}")

    @app.cli.command("list-schools")
    def list_schools_command():
        """List all schools in the system"""
        schools = list_schools()
        if not schools:
            click.echo("📭 No schools found")
            return

        click.echo("🏫 Schools in system:")
        click.echo("-" * 60)
        for school in schools:
            click.echo(f"  {school.name}")
            click.echo(f"    Slug: {school.slug}")
            click.echo(f"    Status: {'Active' if school.is_active else 'Inactive'}")
            click.echo("-" * 60)

    @app.cli.command("create-school-admin")
    @click.option("--slug", required=True, help="School slug")
    @click.option("--username", required=True, help="Admin username")
    @click.option("--email", required=True, help="Admin email")
    @click.option("--password", required=True, help="Admin password")
    @click.option("--first-name", required=True, help="First name")
    @click.option("--last-name", required=True, help="Last name")
    @click.option("--role", type=click.Choice(STAFF_ROLES), default='school_admin', show_default=True)
    def create_school_admin_command(slug, username, email, password, first_name, last_name, role):
        """Create a school admin or accountant user"""
        session = get_session()
        try:
            school = _get_school(session, slug)

            existing = session.query(User).filter_by(username=username, tenant_id=school.id).first()
            if existing:
                click.echo(f"❌ Username '{username}' already exists")
                return

            admin = User(
                tenant_id=school.id,
                username=username,
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
                is_active=True
            )
            admin.set_password(password)

            session.add(admin)
            session.commit()

            click.echo(f"✅ {role.replace('_', ' ').title()} created for {school.name}")
            click.echo(f"   Username: {username}")
            click.echo(f"   Login URL: /{slug}/login")
        finally:
            session.close()

    # ===== FEE BILLING =====

    @app.cli.command("generate-invoices")
    @click.option("--slug", required=True, help="School slug")
    @click.option("--structure-id", required=True, type=int, help="Fee structure to bill")
    @click.option("--month", type=click.IntRange(1, 12), help="Billing month (omit for a non-periodic invoice)")
    @click.option("--due-date", help="Due date, YYYY-MM-DD (defaults to the earliest component due day)")
    @click.option("--class-name", help="Only bill this class, e.g. 10")
    @click.option("--section", help="Only bill this section, e.g. A")
    @click.option("--draft", is_flag=True, help="Create invoices as drafts")
    def generate_invoices_command(slug, structure_id, month, due_date, class_name, section, draft):
        """Generate invoices for a billing period; Ctrl-C stops after the current student"""
        cancel_event = threading.Event()
        previous_handler = None
        if threading.current_thread() is threading.main_thread():
            previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: cancel_event.set())

        session = get_session()
        try:
            school = _get_school(session, slug)
            click.echo(f"🧾 Generating invoices for {school.name}...")
            result = generate_invoices(
                session, school.id, structure_id,
                month=month,
                due_date=due_date,
                class_name=class_name,
                section=section,
                draft=draft,
                cancel_event=cancel_event
            )
        except FeeError as e:
            raise click.ClickException(e.message)
        finally:
            session.close()
            if previous_handler is not None:
                signal.signal(signal.SIGINT, previous_handler)

        click.echo(f"✅ Generated: {len(result['generated'])}")
        click.echo(f"   Skipped (already invoiced): {result['skipped']}")
        if result['errors']:
            click.echo(f"❌ Failed: {len(result['errors'])}")
            for error in result['errors']:
                click.echo(f"   Student {error['account_id']}: {error['message']}")
        if result['cancelled']:
            click.echo("⚠️  Run cancelled before all students were processed")

    @app.cli.command("refresh-fee-status")
    @click.option("--slug", help="Only refresh this school")
    def refresh_fee_status_command(slug):
        """Mark unpaid invoices past their due date as overdue"""
        session = get_session()
        try:
            tenant_id = _get_school(session, slug).id if slug else None
            changed = refresh_invoice_statuses(session, tenant_id)
            click.echo(f"✅ {changed} invoice(s) updated")
        finally:
            session.close()

    @app.cli.command("check-ledger")
    @click.option("--slug", required=True, help="School slug")
    def check_ledger_command(slug):
        """Compare every invoice's paid amount with its completed payments"""
        session = get_session()
        try:
            school = _get_school(session, slug)
            invoice_ids = [
                row.id for row in session.query(FeeInvoice.id)
                .filter_by(tenant_id=school.id).order_by(FeeInvoice.id).all()
            ]

            mismatched = []
            for invoice_id in invoice_ids:
                report = reconcile_invoice(session, school.id, invoice_id)
                if not report['consistent']:
                    mismatched.append(report)
                    click.echo(
                        f"❌ {report['invoice_number']}: paid {report['paid_amount']}, "
                        f"payments {report['payments_total']}"
                    )
        finally:
            session.close()

        if mismatched:
            raise click.ClickException(f"{len(mismatched)} of {len(invoice_ids)} invoice(s) out of balance")
        click.echo(f"✅ {len(invoice_ids)} invoice(s) checked, ledger balanced")
