"""
FastAPI backend for HemoCount.
Provides REST API for hemocytometer cell counts, master mix recipes, and user preferences.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Union

from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy.orm import Session
from sqlalchemy import select
from starlette.responses import StreamingResponse

from database import get_db, init_db
from models import Settings
from calculations import CalculationEngine
from calculations.concentration import (
    DEFAULT_DILUTION_FACTOR,
    ConcentrationPair,
    calculate_concentrations,
    parse_dilution_factor,
)
from calculations.counting import (
    CORNER_GRIDS,
    DEFAULT_DECLARED_GRID_COUNT,
    INPUT_MODES,
    INPUT_MODE_GRID,
    CountTotals,
    GridEntry,
    GridSelection,
    aggregate_grids,
    aggregate_totals,
    empty_grid_entries,
    parse_count,
    parse_grid_id,
)
from calculations.export import count_results_csv, count_results_text, export_filename, master_mix_csv
from calculations.master_mix import (
    DEFAULT_CELLS_PER_WELL,
    DEFAULT_EXTRA_WELLS,
    DEFAULT_VOLUME_PER_WELL_UL,
    DEFAULT_WELL_COUNT,
    INVALID_MANUAL_WARNING,
    MASTER_MIX_SOURCES,
    SOURCE_HEMOCYTOMETER,
    SOURCE_MANUAL,
    build_protocol_steps,
    parse_float,
    parse_manual_concentration,
    parse_master_mix_params,
    select_source_concentration,
    solve_master_mix,
)

VERSION = "0.1.0"

logging.basicConfig(
    level=os.environ.get("HEMOCOUNT_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Raw form field as sent by the browser: usually a string, sometimes a number
RawField = Union[str, int, float, None]


# --- Pydantic schemas ---

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class SettingUpdate(BaseModel):
    """Schema for updating a preference."""
    value: str


class SettingResponse(BaseModel):
    """Schema for preference response."""
    id: int
    key: str
    value: str
    updated_at: datetime

    class Config:
        from_attributes = True


class GridCountsInput(BaseModel):
    """Raw viable/non-viable entry for one grid."""
    viable: RawField = ""
    non_viable: RawField = ""


class GridCountRequest(BaseModel):
    """Grid-by-grid entry. Keys of grids are 1-5 or grid-1..grid-5."""
    grids: dict[str, GridCountsInput] = {}
    selected_grids: list[Union[int, str]] = sorted(int(g) for g in CORNER_GRIDS)
    dilution_factor: RawField = DEFAULT_DILUTION_FACTOR


class TotalCountRequest(BaseModel):
    """Total count entry."""
    viable: RawField = ""
    non_viable: RawField = ""
    grid_count: RawField = DEFAULT_DECLARED_GRID_COUNT
    dilution_factor: RawField = DEFAULT_DILUTION_FACTOR


class ConcentrationRequest(BaseModel):
    """Aggregated counts to convert into cells/mL."""
    total_cells: RawField = 0
    viable_cells: RawField = 0
    grids_counted: RawField = DEFAULT_DECLARED_GRID_COUNT
    dilution_factor: RawField = DEFAULT_DILUTION_FACTOR


class ConcentrationResponse(BaseModel):
    total_concentration: float
    viable_concentration: float


class CountResponse(BaseModel):
    """Count totals with the derived concentrations."""
    total_cells: int
    viable_cells: int
    non_viable_cells: int
    grids_counted: int
    viability_percent: float
    dilution_factor: int
    total_concentration: float
    viable_concentration: float
    selected_grids: Optional[list[int]] = None


class MasterMixRequest(BaseModel):
    """Master mix form. Concentrations come from a previous count unless source is manual."""
    volume_per_well: RawField = DEFAULT_VOLUME_PER_WELL_UL
    cells_per_well: RawField = DEFAULT_CELLS_PER_WELL
    well_count: RawField = DEFAULT_WELL_COUNT
    extra_wells: RawField = DEFAULT_EXTRA_WELLS
    total_concentration: RawField = 0.0
    viable_concentration: RawField = 0.0
    use_viable: bool = True
    source: Optional[str] = None
    manual_concentration: Optional[str] = None


class MasterMixResponse(BaseModel):
    stock_volume_ml: float
    medium_volume_ml: float
    total_volume_ml: float
    final_concentration: float
    total_wells: int
    source: str
    source_concentration: float
    manual_concentration_invalid: bool
    is_overdrawn: bool
    warnings: list[str]
    protocol: list[str]


class ManualConcentrationRequest(BaseModel):
    value: Optional[str] = None


class ManualConcentrationResponse(BaseModel):
    value: Optional[float]
    present: bool
    valid: bool


class CalculationPreviewRequest(BaseModel):
    """Schema for a single calculation run."""
    calculation_type: str
    data: dict


class CalculationPipelineRequest(BaseModel):
    """Schema for running count -> concentration -> master mix."""
    data: dict


class CalculationResultResponse(BaseModel):
    """Schema for a single calculation result."""
    calculation_type: str
    input_summary: dict
    output_values: dict
    warnings: list[str]
    success: bool
    error: Optional[str] = None


class CountExportRequest(BaseModel):
    """Aggregated counts to export."""
    total_cells: RawField = 0
    viable_cells: RawField = 0
    grids_counted: RawField = DEFAULT_DECLARED_GRID_COUNT
    dilution_factor: RawField = DEFAULT_DILUTION_FACTOR


# --- Default preferences ---

PREFERENCE_DEFAULTS = {
    "input_mode": INPUT_MODE_GRID,
    "master_mix_source": SOURCE_HEMOCYTOMETER,
}

PREFERENCE_CHOICES = {
    "input_mode": INPUT_MODES,
    "master_mix_source": MASTER_MIX_SOURCES,
}


# --- App lifecycle ---

def seed_default_preferences(db: Session):
    """Seed default preferences if they don't exist."""
    for key, value in PREFERENCE_DEFAULTS.items():
        existing = db.execute(select(Settings).where(Settings.key == key)).scalar_one_or_none()
        if not existing:
            setting = Settings(key=key, value=value)
            db.add(setting)
    db.commit()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup and seed defaults."""
    init_db()
    from database import SessionLocal
    db = SessionLocal()
    try:
        seed_default_preferences(db)
    finally:
        db.close()
    logger.info("HemoCount backend %s ready", VERSION)

    yield


# --- FastAPI app ---

app = FastAPI(
    title="HemoCount Backend",
    description="Backend API for hemocytometer cell counting and master mix preparation",
    version=VERSION,
    lifespan=lifespan,
)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",      # Vite default
    "http://127.0.0.1:5173",
    "http://localhost:4173",      # Vite preview
    "http://127.0.0.1:4173",
]

_cors_env = os.environ.get("HEMOCOUNT_CORS_ORIGINS")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_env.split(",") if o.strip()] if _cors_env else DEFAULT_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Helpers ---

def _get_preferences(db: Session) -> dict:
    """Load stored preferences as a dict, falling back to defaults."""
    stmt = select(Settings)
    settings = db.execute(stmt).scalars().all()
    return {**PREFERENCE_DEFAULTS, **{s.key: s.value for s in settings}}


def _count_response(
    totals: CountTotals,
    dilution_factor: int,
    selected_grids: Optional[list[int]] = None,
) -> CountResponse:
    pair = calculate_concentrations(totals, dilution_factor)
    return CountResponse(
        **totals.to_dict(),
        dilution_factor=dilution_factor,
        **pair.to_dict(),
        selected_grids=selected_grids,
    )


def _totals_from_counts(total_cells: RawField, viable_cells: RawField, grids_counted: RawField) -> CountTotals:
    total = parse_count(total_cells)
    return CountTotals(
        total_cells=total,
        viable_cells=min(parse_count(viable_cells), total),
        grids_counted=parse_count(grids_counted),
    )


def _csv_response(content: str, filename: str, media_type: str = "text/csv") -> StreamingResponse:
    return StreamingResponse(
        iter([content]),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# --- Endpoints ---

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint to verify backend is running."""
    return HealthResponse(status="ok", version=VERSION)


# --- Count Endpoints ---

@app.post("/count/grids", response_model=CountResponse)
async def count_grids(request: GridCountRequest):
    """
    Aggregate grid-by-grid counts over the selected grids.

    Unparsable counts contribute 0. The selection must name at least one grid.
    """
    entries = empty_grid_entries()
    for key, counts in request.grids.items():
        grid_id = parse_grid_id(key)
        if grid_id is None:
            raise HTTPException(status_code=400, detail=f"Unknown grid id: {key}")
        entries[grid_id] = GridEntry(
            grid_id,
            viable="" if counts.viable is None else str(counts.viable),
            non_viable="" if counts.non_viable is None else str(counts.non_viable),
        )

    selected = [parse_grid_id(key) for key in request.selected_grids]
    if any(grid_id is None for grid_id in selected):
        raise HTTPException(status_code=400, detail="Selection contains an unknown grid id")
    if not selected:
        raise HTTPException(status_code=400, detail="At least one grid must be selected")

    selection = GridSelection(selected)
    totals = aggregate_grids(entries, selection)
    return _count_response(
        totals,
        parse_dilution_factor(request.dilution_factor),
        selected_grids=[int(g) for g in selection],
    )


@app.post("/count/totals", response_model=CountResponse)
async def count_totals(request: TotalCountRequest):
    """Build totals from a single viable/non-viable pair and a declared grid count."""
    totals = aggregate_totals(request.viable, request.non_viable, request.grid_count)
    return _count_response(totals, parse_dilution_factor(request.dilution_factor))


@app.post("/concentration", response_model=ConcentrationResponse)
async def get_concentration(request: ConcentrationRequest):
    """Convert aggregated counts to total and viable cells/mL."""
    totals = _totals_from_counts(request.total_cells, request.viable_cells, request.grids_counted)
    pair = calculate_concentrations(totals, parse_dilution_factor(request.dilution_factor))
    return ConcentrationResponse(**pair.to_dict())


# --- Master Mix Endpoints ---

def _solve_master_mix_request(request: MasterMixRequest, db: Session):
    """Resolve the source concentration and solve. Returns (source, manual, params, result)."""
    source = request.source or _get_preferences(db)["master_mix_source"]
    if source not in MASTER_MIX_SOURCES:
        raise HTTPException(status_code=400, detail=f"Unknown master mix source: {source}")

    pair = ConcentrationPair(
        total_concentration=max(parse_float(request.total_concentration), 0.0),
        viable_concentration=max(parse_float(request.viable_concentration), 0.0),
    )
    manual = parse_manual_concentration(request.manual_concentration)
    source_concentration = select_source_concentration(pair, request.use_viable, source, manual)
    params = parse_master_mix_params(
        request.volume_per_well,
        request.cells_per_well,
        request.well_count,
        request.extra_wells,
        source_concentration,
    )
    return source, manual, params, solve_master_mix(params)


@app.post("/master-mix", response_model=MasterMixResponse)
async def calculate_master_mix(request: MasterMixRequest, db: Session = Depends(get_db)):
    """
    Solve the master mix recipe.

    When source is omitted the stored master_mix_source preference is used.
    An invalid manual concentration is flagged and ignored.
    """
    source, manual, params, result = _solve_master_mix_request(request, db)

    warnings = list(result.warnings)
    manual_invalid = source == SOURCE_MANUAL and manual.is_present and not manual.is_valid
    if manual_invalid:
        warnings.insert(0, INVALID_MANUAL_WARNING)

    return MasterMixResponse(
        **result.to_dict(),
        total_wells=params.total_wells,
        source=source,
        source_concentration=params.source_concentration,
        manual_concentration_invalid=manual_invalid,
        is_overdrawn=result.is_overdrawn,
        warnings=warnings,
        protocol=build_protocol_steps(params, result),
    )


@app.post("/manual-concentration/validate", response_model=ManualConcentrationResponse)
async def validate_manual_concentration(request: ManualConcentrationRequest):
    """Check a manually entered concentration (accepts scientific notation)."""
    manual = parse_manual_concentration(request.value)
    return ManualConcentrationResponse(
        value=manual.value,
        present=manual.is_present,
        valid=manual.is_valid,
    )


# --- Calculation Endpoints ---

def _result_response(result) -> CalculationResultResponse:
    return CalculationResultResponse(
        calculation_type=result.calculation_type,
        input_summary=result.input_summary,
        output_values=result.output_values,
        warnings=result.warnings,
        success=result.success,
        error=result.error,
    )


@app.get("/calculations/types", response_model=list[str])
async def get_calculation_types():
    """Get list of available calculation types."""
    return CalculationEngine.get_available_types()


@app.post("/calculate/preview", response_model=CalculationResultResponse)
async def preview_calculation(request: CalculationPreviewRequest, db: Session = Depends(get_db)):
    """Run a single calculation stage on raw form data."""
    engine = CalculationEngine(_get_preferences(db))

    try:
        result = engine.calculate(request.data, request.calculation_type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _result_response(result)


@app.post("/calculate/all", response_model=list[CalculationResultResponse])
async def calculate_pipeline(request: CalculationPipelineRequest, db: Session = Depends(get_db)):
    """Run count -> concentration -> master mix on raw form data."""
    engine = CalculationEngine(_get_preferences(db))
    return [_result_response(r) for r in engine.calculate_all(request.data)]


# --- Preference Endpoints ---

@app.get("/preferences", response_model=list[SettingResponse])
async def get_preferences(db: Session = Depends(get_db)):
    """Get all stored preferences."""
    stmt = select(Settings).order_by(Settings.key)
    result = db.execute(stmt)
    return result.scalars().all()


@app.get("/preferences/{key}", response_model=SettingResponse)
async def get_preference(key: str, db: Session = Depends(get_db)):
    """Get a single preference by key."""
    stmt = select(Settings).where(Settings.key == key)
    setting = db.execute(stmt).scalar_one_or_none()
    if not setting:
        raise HTTPException(status_code=404, detail=f"Preference '{key}' not found")
    return setting


@app.put("/preferences/{key}", response_model=SettingResponse)
async def update_preference(
    key: str,
    data: SettingUpdate,
    db: Session = Depends(get_db),
):
    """Create or update a preference. Last write wins."""
    if key not in PREFERENCE_CHOICES:
        raise HTTPException(status_code=404, detail=f"Unknown preference '{key}'")
    if data.value not in PREFERENCE_CHOICES[key]:
        allowed = ", ".join(PREFERENCE_CHOICES[key])
        raise HTTPException(status_code=400, detail=f"Invalid value for '{key}'; expected one of: {allowed}")

    stmt = select(Settings).where(Settings.key == key)
    setting = db.execute(stmt).scalar_one_or_none()

    if setting:
        setting.value = data.value
    else:
        setting = Settings(key=key, value=data.value)
        db.add(setting)

    db.commit()
    db.refresh(setting)
    logger.debug("Preference %s set to %s", key, data.value)
    return setting


# --- Export Endpoints ---

@app.post("/export/count.csv")
async def export_count_csv(request: CountExportRequest):
    """Download count results as CSV."""
    totals = _totals_from_counts(request.total_cells, request.viable_cells, request.grids_counted)
    dilution_factor = parse_dilution_factor(request.dilution_factor)
    content = count_results_csv(totals, calculate_concentrations(totals, dilution_factor), dilution_factor)
    return _csv_response(content, export_filename())


@app.post("/export/count.txt")
async def export_count_text(request: CountExportRequest):
    """Count results as a plain-text summary."""
    totals = _totals_from_counts(request.total_cells, request.viable_cells, request.grids_counted)
    dilution_factor = parse_dilution_factor(request.dilution_factor)
    content = count_results_text(totals, calculate_concentrations(totals, dilution_factor), dilution_factor)
    return StreamingResponse(iter([content]), media_type="text/plain")


@app.post("/export/master-mix.csv")
async def export_master_mix_csv(request: MasterMixRequest, db: Session = Depends(get_db)):
    """Download the master mix recipe as CSV."""
    _, _, params, result = _solve_master_mix_request(request, db)
    return _csv_response(master_mix_csv(params, result), export_filename("master_mix"))
