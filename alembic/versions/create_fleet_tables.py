from alembic import op

revision = "create_fleet_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute("""
        CREATE TABLE IF NOT EXISTS carrier_positions (
            carrier_id VARCHAR(64) PRIMARY KEY,
            lat DOUBLE PRECISION NOT NULL,
            lng DOUBLE PRECISION NOT NULL,
            heading DOUBLE PRECISION,
            speed DOUBLE PRECISION,
            is_online BOOLEAN NOT NULL DEFAULT FALSE,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS jobs (
            id SERIAL PRIMARY KEY,
            shipper_id VARCHAR(64) NOT NULL,
            equipment_type VARCHAR(100) NOT NULL,
            weight NUMERIC(12,2) NOT NULL,
            pickup_address VARCHAR(255) NOT NULL,
            pickup_lat DOUBLE PRECISION NOT NULL,
            pickup_lng DOUBLE PRECISION NOT NULL,
            delivery_address VARCHAR(255) NOT NULL,
            delivery_lat DOUBLE PRECISION NOT NULL,
            delivery_lng DOUBLE PRECISION NOT NULL,
            requested_date DATE NOT NULL,
            notes TEXT,
            status VARCHAR(20) NOT NULL DEFAULT 'open',
            accepted_bid_id INTEGER,
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_jobs_status CHECK (
                status IN ('open', 'pending_bids', 'bid_accepted', 'in_transit', 'completed', 'cancelled')
            )
        );

        CREATE TABLE IF NOT EXISTS bids (
            id SERIAL PRIMARY KEY,
            job_id INTEGER NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
            carrier_id VARCHAR(64) NOT NULL,
            price NUMERIC(12,2) NOT NULL,
            notes TEXT,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_bids_job_carrier UNIQUE (job_id, carrier_id),
            CONSTRAINT ck_bids_status CHECK (status IN ('pending', 'accepted', 'rejected'))
        );

        -- At most one accepted bid per job, enforced by the database as well
        CREATE UNIQUE INDEX IF NOT EXISTS uq_bids_one_accepted ON bids(job_id) WHERE status = 'accepted';

        CREATE TABLE IF NOT EXISTS job_ratings (
            id SERIAL PRIMARY KEY,
            job_id INTEGER NOT NULL UNIQUE REFERENCES jobs(id) ON DELETE CASCADE,
            shipper_id VARCHAR(64) NOT NULL,
            carrier_id VARCHAR(64) NOT NULL,
            score SMALLINT NOT NULL CHECK (score BETWEEN 1 AND 5),
            comment TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_carrier_positions_online ON carrier_positions(is_online);
        CREATE INDEX IF NOT EXISTS idx_jobs_shipper_id ON jobs(shipper_id);
        CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
        CREATE INDEX IF NOT EXISTS idx_jobs_accepted_bid_id ON jobs(accepted_bid_id);
        CREATE INDEX IF NOT EXISTS idx_bids_job_id ON bids(job_id);
        CREATE INDEX IF NOT EXISTS idx_bids_carrier_id ON bids(carrier_id);
        CREATE INDEX IF NOT EXISTS idx_job_ratings_carrier_id ON job_ratings(carrier_id);
    """)


def downgrade():
    op.execute("""
        DROP TABLE IF EXISTS job_ratings CASCADE;
        DROP TABLE IF EXISTS bids CASCADE;
        DROP TABLE IF EXISTS jobs CASCADE;
        DROP TABLE IF EXISTS carrier_positions CASCADE;
    """)
