# seed_demo.py
import os

import requests

BASE_URL = os.getenv("LIBRARY_BASE_URL", "http://localhost:5000")
ADMIN_SECRET_CODE = os.getenv("ADMIN_SECRET_CODE", "dev-admin-code")

ADMIN = {
    "name": "Demo Librarian",
    "email": "librarian@example.com",
    "password": "librarian-pass",
}

MEMBER = {
    "firstName": "Alice",
    "lastName": "Example",
    "email": "alice@example.com",
    "password": "alice-pass",
}

CATEGORIES = ["Fiction", "Science", "Technology"]

AUTHORS = [
    {"firstName": "Isaac", "lastName": "Asimov"},
    {"firstName": "Mary", "lastName": "Shelley"},
    {"firstName": "Robert", "lastName": "Martin"},
]

# (isbn, title, copies, category, author last name)
BOOKS = [
    ("9780553293357", "Foundation", 3, "Science", "Asimov"),
    ("9780141439471", "Frankenstein", 2, "Fiction", "Shelley"),
    ("9780132350884", "Clean Code", 1, "Technology", "Martin"),
]


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except requests.RequestException as e:
        print(f"[ERROR] service not reachable at {health_url}: {e}")
        return False


def admin_token():
    """Register the demo admin, or log in if it already exists."""
    resp = requests.post(
        f"{BASE_URL}/api/auth/register-admin",
        json={**ADMIN, "secretCode": ADMIN_SECRET_CODE},
        timeout=5,
    )
    if resp.status_code == 409:
        resp = requests.post(
            f"{BASE_URL}/api/auth/login",
            json={"email": ADMIN["email"], "password": ADMIN["password"]},
            timeout=5,
        )
    print(f"  admin {ADMIN['email']}: {resp.status_code}")
    resp.raise_for_status()
    return resp.json()["token"]


def seed_categories(headers):
    print("\n== Seeding categories ==")
    for name in CATEGORIES:
        resp = requests.post(
            f"{BASE_URL}/api/categories",
            headers=headers,
            json={"categoryName": name},
            timeout=5,
        )
        print(f"  {name}: {resp.status_code}")
    resp = requests.get(f"{BASE_URL}/api/categories", timeout=5)
    return {c["categoryName"]: c["categoryId"] for c in resp.json()}


def seed_authors(headers):
    print("\n== Seeding authors ==")
    existing = requests.get(f"{BASE_URL}/api/authors", timeout=5).json()
    by_last_name = {a["lastName"]: a["authorId"] for a in existing}
    for author in AUTHORS:
        if author["lastName"] in by_last_name:
            print(f"  {author['lastName']}: exists")
            continue
        resp = requests.post(f"{BASE_URL}/api/authors", headers=headers, json=author, timeout=5)
        print(f"  {author['lastName']}: {resp.status_code}")
        if resp.ok:
            by_last_name[author["lastName"]] = resp.json()["authorId"]
    return by_last_name


def seed_books(headers, categories, authors):
    print("\n== Seeding books ==")
    for i, (isbn, title, copies, category, author) in enumerate(BOOKS, start=1):
        payload = {
            "isbn": isbn,
            "title": title,
            "copiesOwned": copies,
            "categoryId": categories.get(category),
            "authors": [authors[author]] if author in authors else [],
        }
        resp = requests.post(f"{BASE_URL}/api/books", headers=headers, json=payload, timeout=5)
        print(f"  [{i:02}] {title} -> {resp.status_code}")
        if not resp.ok and resp.status_code != 409:
            print(f"      Body: {resp.text.strip()}")


def seed_member():
    print("\n== Registering demo member ==")
    resp = requests.post(f"{BASE_URL}/api/auth/register", json=MEMBER, timeout=5)
    print(f"  {MEMBER['email']}: {resp.status_code}")


def main():
    print("Checking library service...")
    if not check_service(BASE_URL):
        print(f"\nLibrary service is not reachable at {BASE_URL}.")
        return

    print("\n== Admin ==")
    headers = {"Authorization": f"Bearer {admin_token()}"}

    categories = seed_categories(headers)
    authors = seed_authors(headers)
    seed_books(headers, categories, authors)
    seed_member()

    print("\nDone.")
    print("Try hitting:")
    print(f"  {BASE_URL}/api/books")


if __name__ == "__main__":
    main()
