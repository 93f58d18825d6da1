import math
import os
import uuid
from datetime import date, datetime
from functools import wraps

from flask import (
    Flask,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)

from werkzeug.utils import secure_filename

from .csv_import import decode_statement_bytes, import_statement_rows, parse_statement
from .db import DRIVER_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .identity import SUPPORTED_PROVIDERS, IdentityClient, IdentityError, generate_pkce_pair
from .ledger_store import TRANSACTION_TYPES, LedgerStore, LedgerStoreError

LEDGER_FILTERS = ("all", "income", "expense")


class DatabaseInitError(RuntimeError):
    """Raised when the ledger database cannot be opened or migrated."""


def parse_amount(value):
    text = (value or "").strip().replace(",", "").replace("$", "")
    if not text:
        return None
    try:
        amount = float(text)
    except ValueError:
        return None
    if not math.isfinite(amount):
        return None
    return amount


def parse_form_date(value):
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    try:
        return datetime.strptime(cleaned, "%Y-%m-%d").date()
    except ValueError:
        return None


def format_currency(value):
    try:
        amount = float(value or 0)
    except (TypeError, ValueError):
        return value
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def format_display_date(value):
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except (TypeError, ValueError):
        return value
    return f"{parsed:%b} {parsed.day}, {parsed.year}"


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "finance_tracker.sqlite"),
        IDENTITY_URL=os.environ.get("IDENTITY_URL", ""),
        IDENTITY_ANON_KEY=os.environ.get("IDENTITY_ANON_KEY", ""),
        IDENTITY_TIMEOUT=float(os.environ.get("IDENTITY_TIMEOUT", "10")),
        TRANSACTION_LIST_LIMIT=100,
        IMPORT_PREVIEW_ROWS=5,
        IMPORT_STAGING_MAX_AGE_HOURS=24,
        LOG_LEVEL=os.environ.get("LOG_LEVEL", "INFO"),
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)
    app.logger.setLevel(app.config["LOG_LEVEL"])
    app.identity = IdentityClient.from_config(app.config)

    app.add_template_filter(format_currency, "currency")
    app.add_template_filter(format_display_date, "display_date")

    def database_config():
        return parse_database_config(app.config["DATABASE"])

    @app.teardown_appcontext
    def close_db(_=None):
        g.pop("store", None)
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except (*DRIVER_ERRORS, OSError, RuntimeError) as exc:
                message = f"Unable to open ledger database {database_config()['database_name']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def get_store():
        if "store" not in g:
            g.store = LedgerStore(get_db())
        return g.store

    def init_db():
        try:
            apply_migrations(database_config())
            app.config["DB_INIT_ERROR"] = None
        except (*DRIVER_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize ledger database {database_config()['database_name']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DRIVER_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            if g.user is None:
                return redirect(url_for("index"))
            return view(**kwargs)

        return wrapped_view

    def render_db_init_error_response():
        message = app.config["DB_INIT_ERROR"]
        return f"<h1>Database initialization failed</h1><p>{message}</p>", 500

    @app.before_request
    def load_logged_in_user():
        if request.endpoint == "db_health":
            return None
        if app.config.get("DB_INIT_ERROR"):
            return render_db_init_error_response()

        user_id = session.get("user_id")
        try:
            g.user = get_store().get_user(user_id) if user_id is not None else None
        except DatabaseInitError:
            return render_db_init_error_response()
        if user_id is not None and g.user is None:
            session.clear()
        return None

    @app.route("/")
    def index():
        if g.user:
            return redirect(url_for("dashboard"))
        return render_template(
            "login.html",
            error=(request.args.get("error") or "").strip(),
            providers=SUPPORTED_PROVIDERS,
        )

    @app.route("/auth/login/<provider>")
    def auth_login(provider):
        if provider not in SUPPORTED_PROVIDERS:
            return redirect(url_for("index", error="unsupported_provider"))

        verifier, challenge = generate_pkce_pair()
        try:
            target = app.identity.authorize_url(provider, url_for("auth_callback", _external=True), challenge)
        except IdentityError as exc:
            app.logger.warning("Could not start %s sign-in: %s", provider, exc)
            return redirect(url_for("index", error=str(exc)))

        session["code_verifier"] = verifier
        session["auth_provider"] = provider
        return redirect(target)

    @app.route("/auth/callback")
    def auth_callback():
        error = (request.args.get("error_description") or request.args.get("error") or "").strip()
        if error:
            app.logger.warning("OAuth error: %s", error)
            return redirect(url_for("index", error=error))

        access_token = request.args.get("access_token")
        refresh_token = request.args.get("refresh_token")
        code = request.args.get("code")
        try:
            if access_token:
                identity_session = app.identity.get_user(access_token, refresh_token)
            elif code:
                identity_session = app.identity.exchange_code(code, session.pop("code_verifier", None))
            else:
                app.logger.warning("OAuth callback without tokens or code")
                return redirect(url_for("index", error="missing_code"))
        except IdentityError as exc:
            app.logger.warning("Sign-in failed: %s", exc)
            return redirect(url_for("index", error=str(exc)))

        provider = identity_session.provider or session.get("auth_provider") or ""
        try:
            user = get_store().upsert_user(identity_session.user_id, identity_session.email, provider)
        except LedgerStoreError as exc:
            app.logger.error("Could not record sign-in for %s: %s", identity_session.user_id, exc)
            return redirect(url_for("index", error="sign_in_failed"))

        session.clear()
        session["user_id"] = user["id"]
        app.logger.info("User %s signed in with %s", user["id"], provider or "unknown provider")
        return redirect(url_for("dashboard"))

    @app.route("/logout")
    def logout():
        session.clear()
        return redirect(url_for("index"))

    @app.route("/dashboard")
    @login_required
    def dashboard():
        store = get_store()
        today = date.today()
        month_start = today.replace(day=1).isoformat()
        month_end = f"{today:%Y-%m}-31"
        return render_template(
            "dashboard.html",
            totals=store.account_totals(g.user["id"]),
            month_totals=store.account_totals(g.user["id"], start=month_start, end=month_end),
            month_label=today.strftime("%B %Y"),
            top_categories=store.category_breakdown(g.user["id"], "expense", limit=5),
            recent=store.list_transactions(g.user["id"], limit=5),
        )

    def render_transactions_page(import_preview=None):
        store = get_store()
        active_filter = request.args.get("filter", "all")
        if active_filter not in LEDGER_FILTERS:
            active_filter = "all"
        form_type = request.args.get("type", "expense")
        if form_type not in TRANSACTION_TYPES:
            form_type = "expense"

        transactions = store.list_transactions(
            g.user["id"],
            type=None if active_filter == "all" else active_filter,
            limit=app.config["TRANSACTION_LIST_LIMIT"],
        )
        total_income = sum(t["amount"] for t in transactions if t["type"] == "income")
        total_expenses = sum(t["amount"] for t in transactions if t["type"] == "expense")
        categories = {row["name"]: row for row in store.list_categories()}
        return render_template(
            "transactions.html",
            transactions=transactions,
            categories=categories,
            form_categories=store.list_categories(form_type),
            form_type=form_type,
            active_filter=active_filter,
            filters=LEDGER_FILTERS,
            total_income=total_income,
            total_expenses=total_expenses,
            balance=total_income - total_expenses,
            today=date.today().isoformat(),
            import_preview=import_preview,
        )

    @app.get("/transactions")
    @login_required
    def transactions():
        return render_transactions_page()

    @app.post("/transactions")
    @login_required
    def create_transaction():
        store = get_store()
        amount = parse_amount(request.form.get("amount"))
        transaction_type = (request.form.get("type") or "expense").strip()
        description = (request.form.get("description") or "").strip()
        category_name = (request.form.get("category") or "Other").strip()
        raw_date = (request.form.get("date") or "").strip()
        transaction_date = parse_form_date(raw_date) if raw_date else date.today()

        error = None
        if amount is None or amount <= 0:
            error = "ERROR: Please enter a valid amount"
        elif transaction_type not in TRANSACTION_TYPES:
            error = "ERROR: Please choose income or expense"
        elif transaction_date is None:
            error = "ERROR: Please enter a valid date"
        else:
            category = store.get_category(category_name)
            if category is None or category["type"] not in (transaction_type, "both"):
                error = "ERROR: Please choose a valid category"

        if error is not None:
            flash(error)
            redirect_args = {"type": transaction_type} if transaction_type in TRANSACTION_TYPES else {}
            return redirect(url_for("transactions", **redirect_args))

        try:
            transaction_id = store.insert_transaction(
                user_id=g.user["id"],
                amount=amount,
                description=description,
                category=category_name,
                type=transaction_type,
                date=transaction_date.isoformat(),
            )
        except LedgerStoreError as exc:
            app.logger.warning("Error saving transaction for user_id=%s: %s", g.user["id"], exc)
            flash("ERROR: Failed to save transaction")
            return redirect(url_for("transactions"))

        app.logger.info("Created transaction_id=%s for user_id=%s", transaction_id, g.user["id"])
        flash("SUCCESS: Transaction recorded")
        return redirect(url_for("transactions"))

    @app.post("/transactions/<int:transaction_id>/delete")
    @login_required
    def delete_transaction(transaction_id):
        try:
            deleted = get_store().delete_transaction(g.user["id"], transaction_id)
        except LedgerStoreError as exc:
            app.logger.warning("Error deleting transaction_id=%s: %s", transaction_id, exc)
            deleted = False

        if not deleted:
            flash("ERROR: Failed to delete transaction")
        else:
            app.logger.info("Deleted transaction_id=%s for user_id=%s", transaction_id, g.user["id"])
            flash("DELETED: Transaction removed")
        active_filter = request.form.get("filter")
        redirect_args = {"filter": active_filter} if active_filter in LEDGER_FILTERS else {}
        return redirect(url_for("transactions", **redirect_args))

    @app.post("/transactions/import")
    @login_required
    def import_transactions():
        store = get_store()
        action = request.form.get("action", "preview")
        import_id = (request.form.get("import_id") or "").strip()

        if action == "cancel":
            if import_id:
                store.clear_import_staging(import_id, g.user["id"])
            return redirect(url_for("transactions"))

        if action == "confirm":
            rows = store.get_staged_import_rows(import_id, g.user["id"]) if import_id else []
            if not rows:
                flash("ERROR: Import preview expired. Please re-upload the file.")
                return redirect(url_for("transactions"))

            # The ledger page reloads after the redirect.
            result = import_statement_rows(store, rows, g.user["id"], reload_limit=None)
            store.clear_import_staging(import_id, g.user["id"])
            flash(result.summary.as_message())
            return redirect(url_for("transactions"))

        upload = request.files.get("statement")
        if upload is None or not upload.filename:
            flash("ERROR: Please choose a CSV file.")
            return redirect(url_for("transactions"))

        text = decode_statement_bytes(upload.read())
        if text is None:
            flash("ERROR: Could not read file encoding. Please re-save as CSV UTF-8.")
            return redirect(url_for("transactions"))

        rows = parse_statement(text)
        if not rows:
            flash("ERROR: No transactions found in file.")
            return redirect(url_for("transactions"))

        store.cleanup_expired_import_staging(app.config["IMPORT_STAGING_MAX_AGE_HOURS"])
        import_id = str(uuid.uuid4())
        store.stage_import_rows(import_id, g.user["id"], rows)
        app.logger.info("Staged %d statement rows as import_id=%s", len(rows), import_id)
        return render_transactions_page(
            import_preview={
                "import_id": import_id,
                "filename": secure_filename(upload.filename) or "statement.csv",
                "total": len(rows),
                "rows": rows[: app.config["IMPORT_PREVIEW_ROWS"]],
            }
        )

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.get_store = get_store
    app.init_db = init_db
    return app
