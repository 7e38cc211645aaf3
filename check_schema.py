import os
from supabase import create_client

TABLES = {
    "pipeline_runs": ["id", "filename", "status", "retries", "created_at", "updated_at"],
    "flows": ["run_id", "source", "target", "amount", "category", "line_item", "statement_section"],
    "verifications": ["run_id", "accuracy", "verified", "confidence_score", "reasoning",
                      "flows_verified", "flows_total", "discrepancies", "value_comparisons"],
}

def load_dotenv(path):
    if not os.path.exists(path):
        return
    with open(path) as f:
        for line in f:
            if '=' in line and not line.startswith('#'):
                key, value = line.strip().split('=', 1)
                os.environ.setdefault(key, value)

def check_schema():
    load_dotenv(".env")
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or os.environ.get("SUPABASE_KEY")
    if not url or not key:
        print("FAILED: SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return
    client = create_client(url, key)

    for table, columns in TABLES.items():
        print(f"--- {table} ---")
        try:
            client.table(table).select(",".join(columns)).limit(1).execute()
            print(f"SUCCESS: all {len(columns)} columns present")
        except Exception as e:
            print(f"FAILED: {e}")

    for bucket in ("pdf-uploads", "diagrams"):
        try:
            client.storage.from_(bucket).list()
            print(f"SUCCESS: bucket '{bucket}' reachable")
        except Exception as e:
            print(f"FAILED: bucket '{bucket}': {e}")

if __name__ == "__main__":
    check_schema()
