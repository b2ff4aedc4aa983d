"""SQL schema of the local cache."""

SCHEMA_SQL = """
BEGIN;

-- annotations (one-to-many) and tags (many-to-many) hang off entries
CREATE TABLE entries (
  id INTEGER PRIMARY KEY NOT NULL,  -- server id
  url TEXT,
  title TEXT,
  content TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  published_at TEXT,
  starred_at TEXT,
  is_archived INTEGER NOT NULL DEFAULT 0,
  is_starred INTEGER NOT NULL DEFAULT 0,
  is_public INTEGER NOT NULL DEFAULT 0,
  origin_url TEXT,
  domain_name TEXT,
  http_status TEXT,
  mimetype TEXT,
  language TEXT,
  preview_picture TEXT,
  reading_time INTEGER,
  uid TEXT,
  published_by TEXT,  -- json array
  headers TEXT,  -- json array
  user_email TEXT,
  user_id INTEGER,
  user_name TEXT,
  sync_state TEXT NOT NULL DEFAULT 'clean'
    CHECK (sync_state IN ('clean', 'pending_push')),
  pending_fields TEXT NOT NULL DEFAULT '[]'  -- json array of edited columns
);

CREATE TABLE tags (
  id INTEGER PRIMARY KEY NOT NULL,  -- server id
  label TEXT NOT NULL UNIQUE,
  slug TEXT NOT NULL
);

CREATE TABLE taglinks (
  tag_id INTEGER NOT NULL,
  entry_id INTEGER NOT NULL,
  FOREIGN KEY (tag_id) REFERENCES tags (id) ON DELETE CASCADE,
  FOREIGN KEY (entry_id) REFERENCES entries (id) ON DELETE CASCADE,
  PRIMARY KEY (tag_id, entry_id)
);

CREATE INDEX index_taglinks_entry_id ON taglinks (entry_id);

CREATE TABLE annotations (
  id INTEGER PRIMARY KEY NOT NULL,  -- server id
  entry_id INTEGER NOT NULL,
  annotator_schema_version TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  quote TEXT,
  ranges TEXT NOT NULL,  -- json array
  text TEXT NOT NULL,  -- empty string when blank
  user TEXT,
  sync_state TEXT NOT NULL DEFAULT 'clean'
    CHECK (sync_state IN ('clean', 'pending_push')),
  pending_fields TEXT NOT NULL DEFAULT '[]',
  FOREIGN KEY (entry_id) REFERENCES entries (id) ON DELETE CASCADE
);

CREATE INDEX index_annotations_entry_id ON annotations (entry_id);

-- server ids of things deleted offline; rows removed once the delete is pushed
CREATE TABLE deleted_entries (
  id INTEGER PRIMARY KEY NOT NULL
);

CREATE TABLE deleted_annotations (
  id INTEGER PRIMARY KEY NOT NULL
);

CREATE TABLE deleted_tags (
  id INTEGER PRIMARY KEY NOT NULL
);

-- things created offline, keyed by local-only ids; rows removed once pushed
CREATE TABLE new_urls (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  url TEXT NOT NULL,
  title TEXT,
  tags TEXT NOT NULL DEFAULT '[]',  -- json array of labels
  is_archived INTEGER NOT NULL DEFAULT 0,
  is_starred INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL
);

CREATE TABLE new_annotations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  entry_id INTEGER,
  new_url_id INTEGER,
  quote TEXT NOT NULL,
  text TEXT NOT NULL,
  ranges TEXT NOT NULL,  -- json array
  created_at TEXT NOT NULL,
  CHECK ((entry_id IS NULL) != (new_url_id IS NULL)),
  FOREIGN KEY (entry_id) REFERENCES entries (id) ON DELETE CASCADE,
  FOREIGN KEY (new_url_id) REFERENCES new_urls (id) ON DELETE CASCADE
);

CREATE TABLE new_taglinks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  entry_id INTEGER,
  new_url_id INTEGER,
  label TEXT NOT NULL,
  CHECK ((entry_id IS NULL) != (new_url_id IS NULL)),
  FOREIGN KEY (entry_id) REFERENCES entries (id) ON DELETE CASCADE,
  FOREIGN KEY (new_url_id) REFERENCES new_urls (id) ON DELETE CASCADE
);

CREATE TABLE deleted_taglinks (
  entry_id INTEGER NOT NULL,
  tag_id INTEGER NOT NULL,
  FOREIGN KEY (entry_id) REFERENCES entries (id) ON DELETE CASCADE,
  PRIMARY KEY (entry_id, tag_id)
);

-- single row of sync bookkeeping that is not user configuration
CREATE TABLE config (
  id INTEGER PRIMARY KEY NOT NULL CHECK (id = 1),
  last_sync TEXT NOT NULL
);

INSERT INTO config (id, last_sync) VALUES (1, '1970-01-01T00:00:00+00:00');

COMMIT;
"""

DELETION_TABLES = {
    "entry": "deleted_entries",
    "annotation": "deleted_annotations",
    "tag": "deleted_tags",
}

LIVE_TABLES = {
    "entry": "entries",
    "annotation": "annotations",
    "tag": "tags",
}
