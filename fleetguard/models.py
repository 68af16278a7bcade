from sqlalchemy import (BigInteger, Boolean, Column, Integer, Numeric, Text, DateTime, Date, ForeignKey, Double, JSON,
                        UniqueConstraint)
from fleetguard.database import Base
from sqlalchemy.sql import func


class Trip(Base):
    __tablename__ = "trips"
    id                       = Column(BigInteger, primary_key=True, index=True)
    status                   = Column(Text, index=True)
    vehicle_assignments      = Column(JSON)            # nested driver / vehicle descriptors
    authorized_stop_zone_ids = Column(JSON)            # list of zone ids
    pickup_locations         = Column(JSON)
    dropoff_locations        = Column(JSON)
    destination_coordinates  = Column(Text)            # "lat,lon"
    unauthorized_stops_count = Column(Integer, default=0)
    alert_type               = Column(Text)
    alert_message            = Column(Text)
    alert_timestamp          = Column(DateTime(timezone=True))
    current_lat              = Column(Double)
    current_lon              = Column(Double)
    last_position_at         = Column(DateTime(timezone=True))
    start_mileage            = Column(Double)            # odometer at the first reading
    end_mileage              = Column(Double)            # latest odometer reading
    total_distance           = Column(Double)
    updated_at               = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class TripRoute(Base):
    __tablename__ = "trip_routes"
    id          = Column(BigInteger, primary_key=True, index=True)
    trip_id     = Column(BigInteger, ForeignKey("trips.id"), index=True, nullable=False)
    lat         = Column(Double, nullable=False)
    lon         = Column(Double, nullable=False)
    speed       = Column(Double)
    mileage     = Column(Double)
    recorded_at = Column(DateTime(timezone=True), nullable=False, index=True)

class Zone(Base):
    __tablename__ = "zones"
    id            = Column(BigInteger, primary_key=True, index=True)
    name          = Column(Text, nullable=False)
    category      = Column(Text, nullable=False, index=True)   # high_risk / toll_gate / border / stop_point
    geometry_kind = Column(Text, nullable=False)               # circle / polygon
    coordinates   = Column(Text, nullable=False)
    radius        = Column(Double)                             # meters
    created_at    = Column(DateTime(timezone=True), server_default=func.now())


class Alert(Base):
    __tablename__ = "alerts"
    id          = Column(BigInteger, primary_key=True, index=True)
    subject_id  = Column(Text, index=True, nullable=False)    # plate or trip id
    category    = Column(Text, index=True, nullable=False)
    zone_id     = Column(BigInteger)
    reason      = Column(Text)
    message     = Column(Text, nullable=False)
    trip_id     = Column(BigInteger, ForeignKey("trips.id"))
    lat         = Column(Numeric)
    lon         = Column(Numeric)
    distance_m  = Column(Numeric)
    detected_at = Column(DateTime(timezone=True), nullable=False)


class UnauthorizedStop(Base):
    __tablename__ = "unauthorized_stops"
    id          = Column(BigInteger, primary_key=True, index=True)
    trip_id     = Column(BigInteger, index=True, nullable=False)
    lat         = Column(Numeric, nullable=False)
    lon         = Column(Numeric, nullable=False)
    reason      = Column(Text)
    detected_at = Column(DateTime(timezone=True), nullable=False)
    synced      = Column(Boolean, default=False)   # True once the trip alert went out


class DriverScore(Base):
    __tablename__ = "driver_scores"
    id                         = Column(BigInteger, primary_key=True, index=True)
    driver_name                = Column(Text, unique=True, nullable=False)
    current_points             = Column(Integer, nullable=False, default=100)
    points_deducted            = Column(Integer, nullable=False, default=0)
    current_level              = Column(Text, nullable=False, default="Gold")
    speed_violations_count     = Column(Integer, default=0)
    harsh_braking_count        = Column(Integer, default=0)
    night_driving_count        = Column(Integer, default=0)
    route_violations_count     = Column(Integer, default=0)
    other_violations_count     = Column(Integer, default=0)
    speed_threshold_exceeded   = Column(Boolean, default=False)
    braking_threshold_exceeded = Column(Boolean, default=False)
    night_threshold_exceeded   = Column(Boolean, default=False)
    route_threshold_exceeded   = Column(Boolean, default=False)
    other_threshold_exceeded   = Column(Boolean, default=False)
    last_updated               = Column(DateTime(timezone=True))


class DriverScoreSnapshot(Base):
    __tablename__ = "driver_score_snapshots"
    __table_args__ = (UniqueConstraint("driver_name", "snapshot_date"),)
    id                       = Column(BigInteger, primary_key=True, index=True)
    driver_name              = Column(Text, nullable=False, index=True)
    snapshot_date            = Column(Date, nullable=False)
    current_points           = Column(Integer, nullable=False)
    points_deducted          = Column(Integer, nullable=False)
    current_level            = Column(Text, nullable=False)
    speed_violations         = Column(Integer, default=0)
    harsh_braking_violations = Column(Integer, default=0)
    night_driving_violations = Column(Integer, default=0)
    route_violations         = Column(Integer, default=0)
    other_violations         = Column(Integer, default=0)
    total_violations         = Column(Integer, default=0)
    created_at               = Column(DateTime(timezone=True), server_default=func.now())
