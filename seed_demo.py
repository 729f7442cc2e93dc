# seed_demo.py
import os

import requests

BASE_URL = os.getenv("CIRCULATION_BASE_URL", "http://localhost:5000")
SERVICE_API_KEY = os.getenv("SERVICE_API_KEY", "dev-service-key")

AUTHORS = [
    {"full_name": "Тарас Шевченко", "birth_date": "1814-03-09"},
    {"full_name": "Іван Франко", "birth_date": "1856-08-27"},
    {"full_name": "Леся Українка", "birth_date": "1871-02-25"},
]

PUBLISHERS = [
    {"name": "А-БА-БА-ГА-ЛА-МА-ГА", "city": "Київ"},
    {"name": "Видавництво Старого Лева", "city": "Львів"},
    {"name": "Фабула", "city": "Харків"},
]

GENRES = [{"name": "Поезія"}, {"name": "Проза"}, {"name": "Драматургія"}]

# author/publisher/genre are positions in the lists above
BOOKS = [
    {
        "title": "Кобзар",
        "isbn": "9789660374638",
        "publication_year": 2014,
        "publisher": 0,
        "authors": [0],
        "genres": [0],
        "instances": ["INV-001", "INV-002"],
    },
    {
        "title": "Захар Беркут",
        "isbn": "9786177535255",
        "publication_year": 2018,
        "publisher": 1,
        "authors": [1],
        "genres": [1],
        "instances": ["INV-003"],
    },
]

READERS = [
    {
        "full_name": "Медвідь Богдан",
        "ticket_number": "R-001",
        "phone_number": "0501234567",
        "email": "medvid@email.com",
    },
    {
        "full_name": "Стародуб Михайло",
        "ticket_number": "R-002",
        "phone_number": "0509876543",
        "email": "starodub@email.com",
    },
]


def check_service(url, http=requests):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = http.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except requests.RequestException as e:
        print(f"[ERROR] service not reachable at {health_url}: {e}")
        return False


def _post(http, url, path, payload, api_key=None):
    headers = {"X-API-Key": api_key} if api_key else {}
    resp = http.post(f"{url.rstrip('/')}{path}", json=payload, headers=headers, timeout=5)
    print(f"  POST {path} -> {resp.status_code}")
    resp.raise_for_status()
    return resp.json()


def seed(url=BASE_URL, api_key=SERVICE_API_KEY, http=requests):
    """Create the demo catalog and readers. Returns the created ids."""
    print("\n== Authors, publishers, genres ==")
    author_ids = [_post(http, url, "/api/authors", a)["author_id"] for a in AUTHORS]
    publisher_ids = [_post(http, url, "/api/publishers", p)["publisher_id"] for p in PUBLISHERS]
    genre_ids = [_post(http, url, "/api/genres", g)["genre_id"] for g in GENRES]

    print("\n== Books and instances ==")
    instances = {}
    book_ids = []
    for book in BOOKS:
        payload = {
            "title": book["title"],
            "isbn": book["isbn"],
            "publication_year": book["publication_year"],
            "publisher_id": publisher_ids[book["publisher"]],
            "author_ids": [author_ids[i] for i in book["authors"]],
            "genre_ids": [genre_ids[i] for i in book["genres"]],
        }
        book_id = _post(http, url, "/api/books", payload, api_key)["book_id"]
        book_ids.append(book_id)
        for inventory_number in book["instances"]:
            created = _post(
                http,
                url,
                f"/api/books/{book_id}/instances",
                {"inventory_number": inventory_number},
                api_key,
            )
            instances[inventory_number] = created["instance_id"]

    print("\n== Readers ==")
    reader_ids = [_post(http, url, "/api/readers", r)["reader_id"] for r in READERS]

    return {"books": book_ids, "instances": instances, "readers": reader_ids}


def main():
    print("Checking circulation service...")
    if not check_service(BASE_URL):
        print("\nCirculation service is not reachable. Make sure it is running on 5000.")
        return

    seed()

    print("\nDone.")
    print("Try hitting:")
    print(f"  {BASE_URL}/api/catalog/available")
    print(f"  {BASE_URL}/api/loans/active")


if __name__ == "__main__":
    main()
