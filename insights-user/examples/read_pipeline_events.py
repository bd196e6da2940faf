"""
Read and review persisted pipeline runs and events from PostgreSQL.

Usage:
    python read_pipeline_events.py
    python read_pipeline_events.py --product-id 22222222-2222-2222-2222-222222222222
    python read_pipeline_events.py --pipeline-id pipeline_1718000000000_ab12cd34
    python read_pipeline_events.py --pipeline-id pipeline_... --type insight_created --type insight_fallback_used
    python read_pipeline_events.py --pipeline-id pipeline_... --export events.csv
"""

import os
import argparse
import psycopg2
import pandas as pd
from dotenv import load_dotenv

load_dotenv()


def get_connection():
    """Create PostgreSQL connection."""
    return psycopg2.connect(
        host=os.getenv("POSTGRES_HOST"),
        port=int(os.getenv("POSTGRES_PORT", 5432)),
        database=os.getenv("POSTGRES_DATABASE"),
        user=os.getenv("POSTGRES_USERNAME"),
        password=os.getenv("POSTGRES_PASSWORD"),
        sslmode=os.getenv("POSTGRES_SSLMODE", "require"),
    )


def get_runs(conn, product_id=None, status=None, limit=20):
    """Query recent pipeline runs with optional filters."""
    query = """
        SELECT
            pipeline_id,
            product_id,
            status,
            started_at,
            completed_at,
            summary->>'feedback_count' AS feedback_count,
            summary->>'cluster_count' AS cluster_count,
            summary->>'insight_count' AS insight_count,
            error
        FROM pipeline_runs
        WHERE 1=1
    """
    params = []

    if product_id:
        query += " AND product_id = %s"
        params.append(product_id)

    if status:
        query += " AND status = %s"
        params.append(status)

    query += " ORDER BY started_at DESC LIMIT %s"
    params.append(limit)

    return pd.read_sql(query, conn, params=params)


def get_events(conn, pipeline_id, event_types=None):
    """Query a run's events in emission order."""
    query = """
        SELECT created_at, stage, event_type, payload
        FROM pipeline_events
        WHERE pipeline_id = %s
    """
    params = [pipeline_id]

    if event_types:
        query += " AND event_type = ANY(%s)"
        params.append(list(event_types))

    query += " ORDER BY created_at, id"

    return pd.read_sql(query, conn, params=params)


def summarize_events(df):
    """Per-stage event counts plus enrichment success/failure and fallback insights."""
    counts = df.groupby(["stage", "event_type"], dropna=False).size().rename("count").reset_index()

    completions = df[df["event_type"] == "feedback_enrichment_complete"]
    succeeded = completions["payload"].apply(lambda p: bool(p.get("success"))).sum() if len(completions) else 0

    created = df[df["event_type"] == "insight_created"]
    fallbacks = created["payload"].apply(lambda p: bool(p.get("fallback_used"))).sum() if len(created) else 0

    return counts, int(succeeded), len(completions), int(fallbacks), len(created)


def main():
    parser = argparse.ArgumentParser(description="Read pipeline runs and events")
    parser.add_argument("--product-id", help="Filter runs by product")
    parser.add_argument("--status", choices=["running", "complete", "failed"], help="Filter runs by status")
    parser.add_argument("--pipeline-id", help="Show the events of one run")
    parser.add_argument("--type", action="append", dest="types", help="Filter events by type (repeatable)")
    parser.add_argument("--export", help="Export events to CSV file")
    args = parser.parse_args()

    conn = get_connection()

    if not args.pipeline_id:
        print("Fetching pipeline runs...")
        runs = get_runs(conn, product_id=args.product_id, status=args.status)
        print(f"\nFound {len(runs)} runs\n")
        print("=" * 80)
        print(runs.to_string(index=False))
        conn.close()
        return

    print(f"Fetching events for {args.pipeline_id}...")
    df = get_events(conn, args.pipeline_id, args.types)
    print(f"\nFound {len(df)} events\n")
    print("=" * 80)

    if len(df):
        counts, ok, total, fallbacks, insights = summarize_events(df)
        print(counts.to_string(index=False))
        print("=" * 80)
        if total:
            print(f"Enrichment: {ok}/{total} items succeeded")
        if insights:
            print(f"Insights: {insights} created, {fallbacks} from fallback")

        failed = df[df["event_type"] == "pipeline_failed"]
        for _, row in failed.iterrows():
            print(f"\nFAILED during {row['payload'].get('stage')}: {row['payload'].get('error')}")

    # Export if requested
    if args.export:
        df.to_csv(args.export, index=False)
        print(f"\nExported to {args.export}")

    conn.close()


if __name__ == "__main__":
    main()
