import random
from datetime import date, timedelta

from finance_tracker import create_app

EXPENSES = [
    ("TESCO STORES", "Food"),
    ("UBER TRIP", "Transport"),
    ("COUNCIL TAX", "Bills"),
    ("CINEWORLD", "Entertainment"),
    ("BOOTS PHARMACY", "Health"),
    ("AMAZON MARKETPLACE", "Shopping"),
]


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        store = app.get_store()
        user = store.upsert_user("demo-user", "demo@example.com", "demo")

        start = date.today() - timedelta(days=90)
        for month in range(3):
            payday = (start + timedelta(days=month * 30)).isoformat()
            store.insert_transaction(user["id"], 2400.0, "ACME LTD SALARY", "Salary", "income", payday)

        for i in range(40):
            description, category = random.choice(EXPENSES)
            store.insert_transaction(
                user["id"],
                round(random.uniform(5, 200), 2),
                description,
                category,
                "expense",
                (start + timedelta(days=i * 2)).isoformat(),
            )

    print(f"Sample data generated for {user['email']} (user id {user['id']})")


if __name__ == "__main__":
    main()
