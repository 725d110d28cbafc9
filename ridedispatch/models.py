from sqlalchemy import (
    Table,
    Column,
    Integer,
    String,
    Float,
    DateTime,
    JSON,
    Boolean,
    MetaData,
)


metadata = MetaData()

drivers = Table(
    "drivers",
    metadata,
    Column("id", String(128), primary_key=True),
    Column("display_name", String, nullable=True),
    Column("is_online", Boolean, default=False, index=True),
    Column("is_available", Boolean, default=False, index=True),
    Column("rating", Float, default=5.0),
    Column("push_token", String, nullable=True),
    # DriverMetrics document; only the reliability tracker writes it
    Column("metrics", JSON, nullable=True),
    # bumped on every metrics write, compared on update
    Column("metrics_version", Integer, default=0, nullable=False),
)

rides = Table(
    "rides",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("rider_id", Integer, nullable=True),
    Column("status", String, index=True),
    Column("pickup", JSON),
    Column("dropoff", JSON),
    Column("stops", JSON, nullable=True),
    Column("fare", Float, nullable=True),
    Column("distance_km", Float, nullable=True),
    Column("duration_min", Float, nullable=True),
    Column("nearby_drivers", JSON, nullable=True),
    Column("notified_driver_id", String(128), nullable=True),
    Column("notified_driver_tier", String, nullable=True),
    Column("notified_driver_priority", Float, nullable=True),
    Column("notification_time", DateTime(timezone=True), nullable=True),
    Column("no_drivers_available", Boolean, default=False),
    Column("search_refreshed_at", DateTime(timezone=True), nullable=True),
    Column("last_search_refresh_handled", DateTime(timezone=True), nullable=True),
    Column("search_attempts", Integer, default=0),
    Column("created_at", DateTime(timezone=True)),
    Column("last_updated", DateTime(timezone=True), nullable=True),
)
