SCHEMA_SQL = r"""
-- Cold-storage rooms / freezers
CREATE TABLE IF NOT EXISTS storage_locations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE,
  location_type TEXT NOT NULL DEFAULT 'cold_storage',
  capacity_kg REAL NOT NULL CHECK (capacity_kg > 0),
  current_usage_kg REAL NOT NULL DEFAULT 0,   -- advisory cache, live usage comes from the ledger
  status TEXT NOT NULL DEFAULT 'active',      -- active / inactive
  created_at TEXT NOT NULL
);

-- Outlets (reference data)
CREATE TABLE IF NOT EXISTS outlets (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE,
  location TEXT,
  status TEXT NOT NULL DEFAULT 'active'
);

-- Sorting batches (one sorting run = one batch)
CREATE TABLE IF NOT EXISTS sorting_batches (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  batch_number TEXT NOT NULL UNIQUE,
  processing_record_id TEXT,
  storage_location_id INTEGER NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',     -- pending / in_progress / completed / failed
  ready_for_dispatch_count INTEGER NOT NULL DEFAULT 0,
  notes TEXT,
  created_at TEXT NOT NULL,
  completed_at TEXT,
  FOREIGN KEY (storage_location_id) REFERENCES storage_locations(id)
);

-- At most one completed batch per processing record
CREATE UNIQUE INDEX IF NOT EXISTS ux_sorting_batches_completed_record
  ON sorting_batches(processing_record_id)
  WHERE status = 'completed' AND processing_record_id IS NOT NULL;

-- Size distribution of a sorting batch
CREATE TABLE IF NOT EXISTS sorting_batch_lines (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  batch_id INTEGER NOT NULL,
  size_class INTEGER NOT NULL CHECK (size_class BETWEEN 0 AND 10),
  pieces INTEGER NOT NULL CHECK (pieces > 0),
  weight_kg REAL NOT NULL CHECK (weight_kg > 0),
  UNIQUE (batch_id, size_class),
  FOREIGN KEY (batch_id) REFERENCES sorting_batches(id) ON DELETE CASCADE
);

-- Ledger entries: immutable once written. id doubles as the FIFO tie-break sequence.
CREATE TABLE IF NOT EXISTS stock_entries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  batch_id INTEGER NOT NULL,
  size_class INTEGER NOT NULL CHECK (size_class BETWEEN 0 AND 10),
  storage_location_id INTEGER NOT NULL,
  initial_pieces INTEGER NOT NULL CHECK (initial_pieces >= 0),
  initial_weight_grams REAL NOT NULL CHECK (initial_weight_grams >= 0),
  created_at TEXT NOT NULL,                   -- FIFO age (inherited across transfers)
  recorded_at TEXT NOT NULL,
  transfer_source_storage_id INTEGER,
  transfer_id INTEGER,
  FOREIGN KEY (batch_id) REFERENCES sorting_batches(id),
  FOREIGN KEY (storage_location_id) REFERENCES storage_locations(id),
  FOREIGN KEY (transfer_source_storage_id) REFERENCES storage_locations(id),
  FOREIGN KEY (transfer_id) REFERENCES transfers(id)
);

CREATE INDEX IF NOT EXISTS ix_stock_entries_size_loc
  ON stock_entries(size_class, storage_location_id);

-- Append-only signed deltas; live balance of an entry = SUM over its movements
CREATE TABLE IF NOT EXISTS stock_movements (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  entry_id INTEGER NOT NULL,
  movement_type TEXT NOT NULL,                -- SORTED_IN / TRANSFER_IN / TRANSFER_OUT / ORDER_OUT / ORDER_RETURN / DISPOSAL / ADJUSTMENT
  pieces_delta INTEGER NOT NULL,
  weight_grams_delta REAL NOT NULL,
  reference_type TEXT,                        -- sorting_batch / transfer / outlet_order / disposal / adjustment
  reference_id INTEGER,
  created_at TEXT NOT NULL,
  FOREIGN KEY (entry_id) REFERENCES stock_entries(id)
);

CREATE INDEX IF NOT EXISTS ix_stock_movements_entry ON stock_movements(entry_id);
CREATE INDEX IF NOT EXISTS ix_stock_movements_ref ON stock_movements(reference_type, reference_id);

-- Inter-location transfers
CREATE TABLE IF NOT EXISTS transfers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  transfer_group TEXT,                        -- shared by the per-size rows of one batch request
  from_storage_location_id INTEGER NOT NULL,
  to_storage_location_id INTEGER NOT NULL,
  size_class INTEGER NOT NULL CHECK (size_class BETWEEN 0 AND 10),
  quantity INTEGER NOT NULL CHECK (quantity >= 0),
  weight_kg REAL NOT NULL CHECK (weight_kg > 0),
  status TEXT NOT NULL DEFAULT 'pending',     -- pending / approved / declined / completed
  requested_by TEXT,
  approved_by TEXT,
  approved_at TEXT,
  completed_by TEXT,
  completed_at TEXT,
  notes TEXT,
  created_at TEXT NOT NULL,
  CHECK (from_storage_location_id <> to_storage_location_id),
  FOREIGN KEY (from_storage_location_id) REFERENCES storage_locations(id),
  FOREIGN KEY (to_storage_location_id) REFERENCES storage_locations(id)
);

-- Outlet orders
CREATE TABLE IF NOT EXISTS outlet_orders (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  order_number TEXT NOT NULL UNIQUE,
  outlet_id INTEGER NOT NULL,
  order_date TEXT NOT NULL,
  delivery_date TEXT,
  requested_sizes TEXT NOT NULL DEFAULT '[]',       -- JSON list of size classes, empty = any
  size_quantities TEXT NOT NULL DEFAULT '{}',       -- JSON map size class -> kg
  requested_quantity REAL NOT NULL CHECK (requested_quantity > 0),  -- total kg
  requested_grade TEXT,
  price_per_kg REAL NOT NULL DEFAULT 0,
  total_value REAL NOT NULL DEFAULT 0,
  status TEXT NOT NULL DEFAULT 'pending',     -- pending / confirmed / dispatched / completed / cancelled
  notes TEXT,
  created_by TEXT,
  confirmed_by TEXT,
  confirmed_at TEXT,
  dispatched_at TEXT,
  completed_at TEXT,
  cancelled_at TEXT,
  created_at TEXT NOT NULL,
  FOREIGN KEY (outlet_id) REFERENCES outlets(id)
);

-- One dispatch record per order
CREATE TABLE IF NOT EXISTS dispatch_records (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  outlet_order_id INTEGER NOT NULL UNIQUE,
  destination TEXT NOT NULL,
  batch_refs TEXT NOT NULL DEFAULT '[]',      -- JSON list of {entry_id, batch_id, pieces, weight_kg}
  size_breakdown TEXT NOT NULL DEFAULT '{}',  -- JSON map size class -> kg
  total_weight REAL NOT NULL DEFAULT 0,
  total_pieces INTEGER NOT NULL DEFAULT 0,
  total_value REAL NOT NULL DEFAULT 0,
  status TEXT NOT NULL DEFAULT 'scheduled',   -- scheduled / dispatched
  notes TEXT,
  dispatched_by TEXT,
  dispatch_date TEXT,
  created_at TEXT NOT NULL,
  FOREIGN KEY (outlet_order_id) REFERENCES outlet_orders(id)
);

-- Write-offs of aged or unusable stock
CREATE TABLE IF NOT EXISTS disposal_records (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  disposal_number TEXT NOT NULL UNIQUE,
  reason TEXT NOT NULL,                       -- Age / Storage Inactive / Quality / Damage / Other
  status TEXT NOT NULL DEFAULT 'completed',
  total_pieces INTEGER NOT NULL DEFAULT 0,
  total_weight_kg REAL NOT NULL DEFAULT 0,
  disposal_cost REAL NOT NULL DEFAULT 0,
  disposal_method TEXT,
  notes TEXT,
  disposed_by TEXT,
  disposal_date TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS disposal_items (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  disposal_id INTEGER NOT NULL,
  entry_id INTEGER NOT NULL,
  size_class INTEGER NOT NULL,
  storage_location_id INTEGER NOT NULL,
  pieces INTEGER NOT NULL,
  weight_kg REAL NOT NULL,
  days_in_storage INTEGER NOT NULL DEFAULT 0,
  FOREIGN KEY (disposal_id) REFERENCES disposal_records(id) ON DELETE CASCADE,
  FOREIGN KEY (entry_id) REFERENCES stock_entries(id),
  FOREIGN KEY (storage_location_id) REFERENCES storage_locations(id)
);

-- Audit trail (best-effort)
CREATE TABLE IF NOT EXISTS audit_logs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT,
  action TEXT NOT NULL,
  table_name TEXT NOT NULL,
  record_id TEXT,
  old_values TEXT,
  new_values TEXT,
  created_at TEXT NOT NULL
);
"""
