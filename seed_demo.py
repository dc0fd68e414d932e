# seed_demo.py
import os

import requests

BASE_URL = os.getenv("LIBRARY_BASE_URL", "http://localhost:5000")
ADMIN_USERNAME = os.getenv("DEFAULT_ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "admin123")

BOOKS = [
    {
        "isbn": "978-0132350884",
        "title": "Clean Code",
        "author": "Robert C. Martin",
    },
    {
        "isbn": "978-0201616224",
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
    },
    {
        "isbn": "978-0131103627",
        "title": "The C Programming Language",
        "author": "Brian W. Kernighan, Dennis M. Ritchie",
    },
    {
        "isbn": "978-0134685991",
        "title": "Effective Java",
        "author": "Joshua Bloch",
    },
    {
        "isbn": "978-0262033848",
        "title": "Introduction to Algorithms",
        "author": "Cormen, Leiserson, Rivest, Stein",
    },
    {
        "isbn": "978-1491950357",
        "title": "Designing Data-Intensive Applications",
        "author": "Martin Kleppmann",
    },
    {
        "isbn": "978-0135974445",
        "title": "Operating System Concepts",
        "author": "Silberschatz, Galvin, Gagne",
    },
]

STUDENTS = [
    {
        "username": "alice.martin",
        "email": "alice.martin@student.edu",
        "password": "student123",
        "full_name": "Alice Martin",
    },
    {
        "username": "carlos.ruiz",
        "email": "carlos.ruiz@student.edu",
        "password": "student123",
        "full_name": "Carlos Ruiz",
    },
]


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except requests.RequestException as e:
        print(f"[ERROR] library service not reachable at {health_url}: {e}")
        return False


def admin_session():
    """Log in as admin; the returned session carries the login cookie."""
    http = requests.Session()
    resp = http.post(
        f"{BASE_URL}/admin/login",
        data={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD},
        allow_redirects=False,
        timeout=5,
    )
    location = resp.headers.get("Location", "")
    if resp.status_code != 302 or "adminError" in location:
        print(f"Admin login failed ({resp.status_code} -> {location})")
        return None
    return http


def last_message(http, path):
    """Read back the flash message left by the previous form post."""
    resp = http.get(f"{BASE_URL}{path}", timeout=5)
    messages = resp.json().get("messages", []) if resp.ok else []
    return messages[-1]["message"] if messages else resp.status_code


def seed_books(http):
    print("\n== Seeding books ==")
    for i, book in enumerate(BOOKS, start=1):
        payload = dict(book)
        # vary copies per title to make availability more interesting
        payload["total_copies"] = 1 + (i % 3)  # 1-3 copies

        try:
            http.post(f"{BASE_URL}/admin/books/add", data=payload, allow_redirects=False, timeout=5)
            print(f"  [{i:02}] {book['title']} -> {last_message(http, '/admin/dashboard')}")
        except requests.RequestException as e:
            print(f"  [{i:02}] {book['title']} -> FAILED: {e}")


def seed_students(http):
    print("\n== Seeding students ==")
    for student in STUDENTS:
        try:
            resp = http.post(
                f"{BASE_URL}/admin/students/create",
                data=student,
                allow_redirects=False,
                timeout=5,
            )
            path = "/admin/students" if resp.headers.get("Location", "").endswith("/admin/students") else "/admin/students/create"
            print(f"  {student['username']} -> {last_message(http, path)}")
        except requests.RequestException as e:
            print(f"  {student['username']} -> FAILED: {e}")


def main():
    print("Checking library service...")
    if not check_service(BASE_URL):
        print("\nLibrary service is not reachable. Make sure it is running on 5000.")
        return

    http = admin_session()
    if http is None:
        return

    seed_books(http)
    seed_students(http)

    print("\nDone.")
    print("Log in as a student (e.g. alice.martin / student123) and try:")
    print(f"  {BASE_URL}/student/dashboard")


if __name__ == "__main__":
    main()
