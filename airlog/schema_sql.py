SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS daily_log (
    id INTEGER PRIMARY KEY,
    organization_id TEXT NOT NULL,
    tlp_no TEXT NOT NULL,                 -- tail number / aircraft id
    record_date TEXT NOT NULL,            -- YYYY-MM-DD
    -- Deltas (actividad del día)
    hours_flown_airframe TEXT,            -- HH:MM
    hours_flown_engine TEXT,              -- HH:MM
    landings INTEGER CHECK (landings IS NULL OR landings >= 0),
    tc INTEGER CHECK (tc IS NULL OR tc >= 0),
    no_of_starts INTEGER CHECK (no_of_starts IS NULL OR no_of_starts >= 0),
    gg_cycle INTEGER CHECK (gg_cycle IS NULL OR gg_cycle >= 0),
    ft_cycle INTEGER CHECK (ft_cycle IS NULL OR ft_cycle >= 0),
    usage TEXT,
    remarks TEXT,
    -- Totales acumulados (solo los escribe el motor de recálculo)
    total_airframe_hr TEXT,               -- decimal, 2 dp
    total_engine_hr_tsn TEXT,             -- decimal, 2 dp
    total_landings INTEGER,
    total_tc INTEGER,
    total_no_of_starts INTEGER,
    total_gg_cycle_tsn INTEGER,
    total_ft_cycle_tsn INTEGER,
    created_by TEXT NOT NULL,
    status INTEGER NOT NULL DEFAULT 1 CHECK (status IN (0,1)),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS data_ledger (
    id INTEGER PRIMARY KEY,
    ts TEXT NOT NULL DEFAULT (datetime('now')),
    organization_id TEXT,
    table_name TEXT NOT NULL,
    action TEXT NOT NULL,      -- INSERT / UPDATE / DELETE / RECALCULATE / IMPORT
    row_id INTEGER,
    actor_user_id INTEGER,
    actor_username TEXT,
    details TEXT
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('admin','mechanic','auditor')),
    organization_id TEXT NOT NULL DEFAULT 'default',
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS user_session (
    token TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    expires_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_daily_log_scope
    ON daily_log(organization_id, tlp_no, status, record_date, id);
CREATE INDEX IF NOT EXISTS idx_daily_log_org_date ON daily_log(organization_id, record_date);
CREATE INDEX IF NOT EXISTS idx_ledger_org ON data_ledger(organization_id);
CREATE INDEX IF NOT EXISTS idx_ledger_actor ON data_ledger(actor_user_id);
CREATE INDEX IF NOT EXISTS idx_user_session_user ON user_session(user_id);

-- Append-only guards
CREATE TRIGGER IF NOT EXISTS forbid_delete_daily_log
BEFORE DELETE ON daily_log
BEGIN
  SELECT RAISE(ABORT, 'DELETE prohibido: usar borrado lógico (daily_log)');
END;
CREATE TRIGGER IF NOT EXISTS forbid_delete_data_ledger
BEFORE DELETE ON data_ledger
BEGIN
  SELECT RAISE(ABORT, 'DELETE prohibido: append-only (data_ledger)');
END;

-- Convenience view: only active records
CREATE VIEW IF NOT EXISTS v_daily_log_active AS
SELECT * FROM daily_log WHERE status = 1;
''';
