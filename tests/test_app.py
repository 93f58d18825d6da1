import io
from datetime import date
from pathlib import Path

import pytest

from finance_tracker import create_app, format_currency, format_display_date, parse_amount
from finance_tracker.identity import IdentityClient, IdentityError, IdentitySession


class FakeIdentity:
    configured = True

    def __init__(self):
        self.exchanged = []

    def authorize_url(self, provider, redirect_to, code_challenge):
        return f"https://id.example.test/auth/v1/authorize?provider={provider}&code_challenge={code_challenge}"

    def exchange_code(self, code, code_verifier):
        if code == "bad-code":
            raise IdentityError("invalid grant")
        if not code_verifier:
            raise IdentityError("Sign-in session expired, please try again")
        self.exchanged.append((code, code_verifier))
        return IdentitySession("access", "refresh", f"ext-{code}", f"{code}@example.com", "google")

    def get_user(self, access_token, refresh_token=""):
        return IdentitySession(access_token, refresh_token, "ext-token-user", "token@example.com", "github")


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "test.sqlite"
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(db_path)})
    app.identity = FakeIdentity()

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, name="alice"):
    with client.session_transaction() as sess:
        sess["code_verifier"] = "test-verifier"
    return client.get(f"/auth/callback?code={name}", follow_redirects=True)


def add_transaction(client, amount="12.50", type="expense", description="Lunch", category="Food", date="2024-03-05"):
    return client.post(
        "/transactions",
        data={"amount": amount, "type": type, "description": description, "category": category, "date": date},
        follow_redirects=True,
    )


def stored_transactions(client):
    with client.application.app_context():
        db = client.application.get_db()
        return db.execute(
            "SELECT user_id, amount, description, category, type, date FROM transactions ORDER BY id"
        ).fetchall()


def upload_statement(client, text, filename="statement.csv"):
    return client.post(
        "/transactions/import",
        data={"action": "preview", "statement": (io.BytesIO(text.encode("utf-8")), filename)},
        content_type="multipart/form-data",
        follow_redirects=True,
    )


def staged_import_id(client):
    with client.application.app_context():
        db = client.application.get_db()
        return db.execute("SELECT import_id FROM import_staging ORDER BY id DESC LIMIT 1").fetchone()["import_id"]


STATEMENT = (
    "Date;Type;Merchant/Description;Debit/Credit;Balance\n"
    "05/03/2024;CARD PAYMENT;TESCO GROCERY;-£12.50;£987.50\n"
    "06/03/2024;DIRECT DEBIT;GYM;-£30.00;£957.50\n"
    "07/03/2024;FASTER PAYMENT;REFUND;£0.00;£957.50\n"
    "Arranged overdraft limit;01/03/2024;£500.00;;\n"
    "\n"
)


def test_index_shows_sign_in_buttons(client):
    response = client.get("/")

    assert b"Sign in" in response.data
    assert b"/auth/login/google" in response.data
    assert b"/auth/login/github" in response.data


def test_protected_pages_redirect_to_sign_in(client):
    for path in ["/dashboard", "/transactions"]:
        response = client.get(path)
        assert response.status_code == 302
        assert response.headers["Location"].endswith("/")


def test_auth_login_stores_verifier_and_redirects_to_provider(client):
    response = client.get("/auth/login/google")

    assert response.status_code == 302
    assert response.headers["Location"].startswith("https://id.example.test/auth/v1/authorize?provider=google")
    with client.session_transaction() as sess:
        assert sess["code_verifier"]
        assert sess["auth_provider"] == "google"


def test_auth_login_rejects_unknown_provider(client):
    response = client.get("/auth/login/myspace", follow_redirects=True)

    assert b"ERROR: unsupported_provider" in response.data


def test_auth_login_without_configured_identity_shows_error(app, client):
    app.identity = IdentityClient("", "")

    response = client.get("/auth/login/github", follow_redirects=True)

    assert b"ERROR: Identity provider is not configured" in response.data


def test_callback_exchanges_code_with_stored_verifier(app, client):
    client.get("/auth/login/google")
    with client.session_transaction() as sess:
        verifier = sess["code_verifier"]

    response = client.get("/auth/callback?code=alice", follow_redirects=True)

    assert b"Dashboard" in response.data
    assert b"alice@example.com" in response.data
    assert app.identity.exchanged == [("alice", verifier)]


def test_callback_with_tokens_bootstraps_session(client):
    response = client.get("/auth/callback?access_token=abc&refresh_token=def", follow_redirects=True)

    assert b"token@example.com" in response.data


def test_callback_provider_error_returns_to_sign_in(client):
    response = client.get("/auth/callback?error=access_denied", follow_redirects=True)

    assert b"ERROR: access_denied" in response.data


def test_callback_without_code_returns_to_sign_in(client):
    response = client.get("/auth/callback", follow_redirects=True)

    assert b"ERROR: missing_code" in response.data


def test_callback_exchange_failure_returns_to_sign_in(client):
    with client.session_transaction() as sess:
        sess["code_verifier"] = "test-verifier"

    response = client.get("/auth/callback?code=bad-code", follow_redirects=True)

    assert b"ERROR: invalid grant" in response.data


def test_callback_without_verifier_fails(client):
    response = client.get("/auth/callback?code=alice", follow_redirects=True)

    assert b"ERROR: Sign-in session expired" in response.data


def test_repeated_sign_in_reuses_user(client):
    login(client)
    client.get("/logout")
    login(client)

    with client.application.app_context():
        db = client.application.get_db()
        users = db.execute("SELECT external_id, email, provider, last_login_at FROM users").fetchall()
    assert len(users) == 1
    assert users[0]["external_id"] == "ext-alice"
    assert users[0]["provider"] == "google"
    assert users[0]["last_login_at"]


def test_logout_clears_session(client):
    login(client)

    response = client.get("/logout", follow_redirects=True)

    assert b"Sign in" in response.data
    assert client.get("/dashboard").status_code == 302


def test_create_transaction(client):
    login(client)

    response = add_transaction(client)

    assert b"SUCCESS: Transaction recorded" in response.data
    assert b"Lunch" in response.data
    rows = stored_transactions(client)
    assert [tuple(row) for row in rows] == [(1, 12.5, "Lunch", "Food", "expense", "2024-03-05")]


@pytest.mark.parametrize("amount", ["", "0", "-5", "abc", "inf"])
def test_create_transaction_rejects_invalid_amount(client, amount):
    login(client)

    response = add_transaction(client, amount=amount)

    assert b"ERROR: Please enter a valid amount" in response.data
    assert stored_transactions(client) == []


def test_create_transaction_rejects_category_for_other_type(client):
    login(client)

    response = add_transaction(client, type="income", category="Food")

    assert b"ERROR: Please choose a valid category" in response.data
    assert stored_transactions(client) == []


def test_create_transaction_rejects_bad_date_and_type(client):
    login(client)

    assert b"ERROR: Please enter a valid date" in add_transaction(client, date="05/03/2024").data
    assert b"ERROR: Please choose income or expense" in add_transaction(client, type="refund").data


def test_create_transaction_defaults_date_and_category(client):
    login(client)

    client.post("/transactions", data={"amount": "3", "type": "expense"}, follow_redirects=True)

    row = stored_transactions(client)[0]
    assert row["category"] == "Other"
    assert row["date"] == date.today().isoformat()


def test_transactions_filter_and_totals(client):
    login(client)
    add_transaction(client, amount="1000", type="income", description="Payroll", category="Salary")
    add_transaction(client, amount="40", description="Groceries", category="Food")

    all_rows = client.get("/transactions")
    assert b"$1,000.00" in all_rows.data
    assert b"$960.00" in all_rows.data

    income_only = client.get("/transactions?filter=income")
    assert b"Payroll" in income_only.data
    assert b"Groceries" not in income_only.data


def test_transaction_form_lists_categories_for_type(client):
    login(client)

    income_form = client.get("/transactions?type=income")

    assert b'value="Salary"' in income_form.data
    assert b'value="Food"' not in income_form.data
    assert b'value="Other"' in income_form.data


def test_delete_transaction(client):
    login(client)
    add_transaction(client)

    response = client.post("/transactions/1/delete", follow_redirects=True)

    assert b"DELETED: Transaction removed" in response.data
    assert stored_transactions(client) == []


def test_delete_is_scoped_to_owner(client):
    login(client, "alice")
    add_transaction(client)
    client.get("/logout")
    login(client, "bob")

    response = client.post("/transactions/1/delete", follow_redirects=True)

    assert b"ERROR: Failed to delete transaction" in response.data
    assert len(stored_transactions(client)) == 1
    assert b"Lunch" not in client.get("/transactions").data


def test_dashboard_metrics(client):
    login(client)
    today = date.today().isoformat()
    add_transaction(client, amount="100", type="income", description="Payroll", category="Salary", date=today)
    add_transaction(client, amount="40", description="Groceries", category="Food", date=today)
    add_transaction(client, amount="5", description="Bus", category="Transport", date="2020-01-01")

    response = client.get("/dashboard")

    assert b"$55.00" in response.data
    assert b"$100.00" in response.data
    assert b"$45.00" in response.data
    assert b"Net $60.00" in response.data
    assert b"Food" in response.data
    assert b"Groceries" in response.data


def test_import_preview_then_confirm(client):
    login(client)
    add_transaction(client, amount="30", description="GYM", category="Other", date="2024-03-06")

    preview = upload_statement(client, STATEMENT)
    assert b"3 transactions found" in preview.data
    assert b"TESCO GROCERY" in preview.data

    response = client.post(
        "/transactions/import",
        data={"action": "confirm", "import_id": staged_import_id(client)},
        follow_redirects=True,
    )

    assert b"IMPORT COMPLETE: 1 imported, 1 failed, 1 duplicates skipped" in response.data
    rows = stored_transactions(client)
    assert len(rows) == 2
    assert tuple(rows[1]) == (1, 12.5, "TESCO GROCERY", "Shopping", "expense", "2024-03-05")


def test_import_confirm_clears_staging(client):
    login(client)
    upload_statement(client, STATEMENT)
    import_id = staged_import_id(client)

    client.post("/transactions/import", data={"action": "confirm", "import_id": import_id})
    response = client.post(
        "/transactions/import",
        data={"action": "confirm", "import_id": import_id},
        follow_redirects=True,
    )

    assert b"ERROR: Import preview expired" in response.data
    assert [row["description"] for row in stored_transactions(client)] == ["TESCO GROCERY", "GYM"]


def test_import_cancel_discards_staged_rows(client):
    login(client)
    upload_statement(client, STATEMENT)

    client.post("/transactions/import", data={"action": "cancel", "import_id": staged_import_id(client)})

    with client.application.app_context():
        db = client.application.get_db()
        assert db.execute("SELECT COUNT(*) FROM import_staging").fetchone()[0] == 0


def test_import_staging_is_scoped_to_user(client):
    login(client, "alice")
    upload_statement(client, STATEMENT)
    import_id = staged_import_id(client)
    client.get("/logout")
    login(client, "bob")

    response = client.post(
        "/transactions/import",
        data={"action": "confirm", "import_id": import_id},
        follow_redirects=True,
    )

    assert b"ERROR: Import preview expired" in response.data
    assert stored_transactions(client) == []


def test_import_requires_file(client):
    login(client)

    response = client.post(
        "/transactions/import",
        data={"action": "preview"},
        content_type="multipart/form-data",
        follow_redirects=True,
    )

    assert b"ERROR: Please choose a CSV file." in response.data


def test_import_with_no_rows(client):
    login(client)

    response = upload_statement(client, "Date;Type;Merchant/Description;Debit/Credit;Balance\n\n")

    assert b"ERROR: No transactions found in file." in response.data


def test_import_requires_sign_in(client):
    response = client.post("/transactions/import", data={"action": "confirm", "import_id": "x"})

    assert response.status_code == 302


def test_health_endpoint(client):
    response = client.get("/health/db")

    assert response.status_code == 200
    assert response.get_json()["ok"] is True


def test_app_reports_database_init_error(tmp_path: Path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    app = create_app({"TESTING": True, "DATABASE": str(blocker / "db.sqlite")})

    response = app.test_client().get("/")

    assert response.status_code == 500
    assert b"Database initialization failed" in response.data


@pytest.mark.parametrize(
    "value, expected",
    [("12.50", 12.5), ("$1,200", 1200.0), ("", None), ("nan", None), ("ten", None)],
)
def test_parse_amount(value, expected):
    assert parse_amount(value) == expected


def test_formatting_filters():
    assert format_currency(1234.5) == "$1,234.50"
    assert format_currency(-3) == "-$3.00"
    assert format_display_date("2024-03-05") == "Mar 5, 2024"
    assert format_display_date("2024-02-31") == "2024-02-31"
