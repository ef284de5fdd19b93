"""
Core calculation engine for hemocytometer form data.
Orchestrates formula execution and result collection.
"""

import logging

from calculations.formulas import (
    Formula,
    CalculationResult,
    CountFormula,
    ConcentrationFormula,
    MasterMixFormula,
)

logger = logging.getLogger(__name__)


# Registry of available calculation types
FORMULA_REGISTRY: dict[str, type[Formula]] = {
    "count": CountFormula,
    "concentration": ConcentrationFormula,
    "master_mix": MasterMixFormula,
}


class CalculationEngine:
    """
    Core engine for running calculations on form data.

    Settings are the stored preferences; they supply defaults for the
    input mode and master mix source when a payload leaves them out.
    """

    def __init__(self, settings: dict):
        """
        Initialize engine with settings.

        Args:
            settings: Dict of key-value settings (from database)
                Expected keys: input_mode, master_mix_source
        """
        self.settings = settings

    def get_formula(self, calculation_type: str) -> Formula:
        """
        Get formula instance for the given calculation type.

        Raises:
            ValueError: If calculation type is unknown
        """
        if calculation_type not in FORMULA_REGISTRY:
            raise ValueError(f"Unknown calculation type: {calculation_type}")
        return FORMULA_REGISTRY[calculation_type]()

    def calculate(self, data: dict, calculation_type: str) -> CalculationResult:
        """
        Run specified calculation on form data.

        Args:
            data: Raw form payload
            calculation_type: Type of calculation to perform

        Returns:
            CalculationResult with output values and any warnings
        """
        formula = self.get_formula(calculation_type)

        try:
            validation_errors = formula.validate(data, self.settings)
            if validation_errors:
                return CalculationResult(
                    calculation_type=calculation_type,
                    input_summary={"validation_errors": validation_errors},
                    output_values={},
                    warnings=[],
                    success=False,
                    error=f"Validation failed: {'; '.join(validation_errors)}",
                )

            return formula.execute(data, self.settings)

        except (AttributeError, TypeError, ValueError) as e:
            logger.debug("Calculation %s rejected payload: %s", calculation_type, e)
            return CalculationResult(
                calculation_type=calculation_type,
                input_summary={},
                output_values={},
                warnings=[],
                success=False,
                error=str(e),
            )

    def calculate_all(self, data: dict) -> list[CalculationResult]:
        """
        Run the full pipeline: count -> concentration -> master mix.

        Each stage's outputs are merged into the payload of the next one.
        A stage that fails stops the pipeline.

        Args:
            data: Raw form payload with count fields, dilution_factor and
                optionally a "master_mix" sub-dict of recipe fields

        Returns:
            List of CalculationResult for each stage performed
        """
        results: list[CalculationResult] = []

        count = self.calculate(data, "count")
        results.append(count)
        if not count.success:
            return results

        concentration = self.calculate(
            {**count.output_values, "dilution_factor": data.get("dilution_factor")},
            "concentration",
        )
        results.append(concentration)
        if not concentration.success:
            return results

        master_mix_data = data.get("master_mix")
        if master_mix_data is not None and not isinstance(master_mix_data, dict):
            results.append(CalculationResult(
                calculation_type="master_mix",
                input_summary={},
                output_values={},
                warnings=[],
                success=False,
                error="master_mix must be an object of recipe fields",
            ))
        elif master_mix_data is not None:
            results.append(self.calculate(
                {
                    **master_mix_data,
                    "total_concentration": concentration.output_values["total_concentration"],
                    "viable_concentration": concentration.output_values["viable_concentration"],
                },
                "master_mix",
            ))

        return results

    @staticmethod
    def get_available_types() -> list[str]:
        """Get list of all available calculation types."""
        return list(FORMULA_REGISTRY.keys())
