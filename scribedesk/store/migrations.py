import sqlite3


JOB_STATES = (
    "'open','claimed','in_progress','completed','client_completed',"
    "'pending','transcriber_counter','client_counter','accepted_awaiting_payment',"
    "'accepted','hired','rejected','cancelled'"
)


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS participants (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          role TEXT NOT NULL CHECK (role IN ('client','transcriber','admin')),
          full_name TEXT NOT NULL,
          email TEXT NOT NULL UNIQUE,
          is_online INTEGER NOT NULL DEFAULT 0,
          vetting_status TEXT CHECK (vetting_status IN ('pending_assessment','under_review','active','rejected')),
          current_job_id INTEGER,
          completed_jobs INTEGER NOT NULL DEFAULT 0,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS reputations (
          participant_id INTEGER NOT NULL REFERENCES participants(id),
          role TEXT NOT NULL CHECK (role IN ('client','transcriber')),
          average_rating REAL NOT NULL,
          rating_count INTEGER NOT NULL,
          updated_at TEXT NOT NULL,
          PRIMARY KEY (participant_id, role)
        );
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS jobs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          variant TEXT NOT NULL CHECK (variant IN ('negotiation','direct_upload')),
          client_id INTEGER NOT NULL REFERENCES participants(id),
          transcriber_id INTEGER REFERENCES participants(id),
          offered_to INTEGER REFERENCES participants(id),
          state TEXT NOT NULL CHECK (state IN ({JOB_STATES})),
          restricted INTEGER NOT NULL DEFAULT 0,
          price TEXT NOT NULL,
          currency TEXT NOT NULL,
          deadline_hours INTEGER NOT NULL,
          requirements TEXT NOT NULL,
          details_json TEXT,
          transcriber_response TEXT,
          client_response TEXT,
          transcriber_comment TEXT,
          client_feedback_comment TEXT,
          client_feedback_rating INTEGER,
          created_at TEXT NOT NULL,
          accepted_at TEXT,
          taken_at TEXT,
          completed_at TEXT,
          client_completed_at TEXT,
          updated_at TEXT NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state ON jobs(state);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_client ON jobs(client_id);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_transcriber ON jobs(transcriber_id);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ledger_entries (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          job_id INTEGER NOT NULL REFERENCES jobs(id),
          job_variant TEXT NOT NULL CHECK (job_variant IN ('negotiation','direct_upload')),
          client_id INTEGER NOT NULL,
          transcriber_id INTEGER,
          gross_amount TEXT NOT NULL,
          transcriber_share TEXT NOT NULL,
          currency TEXT NOT NULL,
          currency_paid TEXT,
          exchange_rate TEXT,
          reference TEXT,
          payout_state TEXT NOT NULL DEFAULT 'awaiting_completion' CHECK (payout_state IN ('awaiting_completion','pending','paid_out')),
          transaction_date TEXT NOT NULL,
          paid_out_at TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        """
    )
    # One settlement per job
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_job ON ledger_entries(job_id, job_variant);"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_ledger_payout ON ledger_entries(payout_state);")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ratings (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          rater_id INTEGER NOT NULL REFERENCES participants(id),
          rater_role TEXT NOT NULL CHECK (rater_role IN ('client','transcriber','admin')),
          rated_user_id INTEGER NOT NULL REFERENCES participants(id),
          rated_role TEXT NOT NULL CHECK (rated_role IN ('client','transcriber')),
          job_id INTEGER REFERENCES jobs(id),
          score INTEGER NOT NULL CHECK (score BETWEEN 1 AND 5),
          comment TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        """
    )
    # Per-job ratings are one-shot; admin ratings (no job) are one per rater/rated/role
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_ratings_per_job ON ratings(rater_id, rated_user_id, rated_role, job_id) WHERE job_id IS NOT NULL;"
    )
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_ratings_standing ON ratings(rater_id, rated_user_id, rated_role) WHERE job_id IS NULL;"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_ratings_rated ON ratings(rated_user_id, rated_role);")
