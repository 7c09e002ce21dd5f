"""
Test Suite: B-spline basis and lookup tables

Tests for:
- Cardinal B-spline values and analytic derivatives
- Table resolution and span per depth
- Exact overlap integrals
- Out-of-range lookups (zero contribution)
- Table caching and configuration errors

Run with: python -m pytest tests/test_basis_tables.py -v
"""

import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import torch
import numpy as np
import pytest

from poisson_recon import ConfigurationError
from poisson_recon.core import (
    BasisTable,
    bspline,
    bspline_derivative,
    get_basis_table,
    verify_derivatives_finite_diff,
    verify_table_symmetry
)


class TestBSpline:
    """Test the centered cardinal B-spline."""

    def test_quadratic_values(self):
        """M_2 at 0, ±1/2, ±1 and outside the support."""
        u = torch.tensor([0.0, 0.5, -0.5, 1.0, -1.0, 1.5, 2.0], dtype=torch.float64)
        expected = torch.tensor([0.75, 0.5, 0.5, 0.125, 0.125, 0.0, 0.0], dtype=torch.float64)
        assert torch.allclose(bspline(u, 2), expected, atol=1e-14)

    def test_partition_of_unity(self):
        """Integer translates of M_n sum to one."""
        u = torch.linspace(-0.5, 0.5, 41, dtype=torch.float64)
        for degree in (1, 2, 3):
            total = sum(bspline(u - k, degree) for k in range(-4, 5))
            assert torch.allclose(total, torch.ones_like(u), atol=1e-12)

    def test_derivative_vanishes_at_center(self):
        """Even B-splines have zero slope at the origin."""
        zero = torch.zeros(1, dtype=torch.float64)
        for degree in (1, 2, 3, 4):
            assert abs(bspline_derivative(zero, degree, 1).item()) < 1e-15

    def test_derivative_order_above_degree(self):
        """Derivatives of order > degree are identically zero."""
        u = torch.linspace(-2, 2, 9, dtype=torch.float64)
        assert torch.all(bspline_derivative(u, 2, 3) == 0)

    def test_finite_difference_check(self):
        """Analytic derivatives match central differences away from knots."""
        u = torch.tensor([-1.2, -0.9, -0.3, 0.1, 0.35, 0.8, 1.3], dtype=torch.float64)
        for degree in (2, 3):
            results = verify_derivatives_finite_diff(degree, u)
            print(f"degree {degree}: {results}")
            assert results['derivative_rel_error'] < 1e-6
            assert results['second_derivative_rel_error'] < 1e-3


class TestValueTables:
    """Test per-depth value tables."""

    @pytest.fixture
    def table(self):
        return BasisTable(degree=2, min_depth=2, max_depth=5)

    def test_resolution_doubles_with_depth(self, table):
        """Sample count grows strictly, with 2^(d+2) samples per unit."""
        counts = [table.value_tables[d].shape[0] for d in table.depths]
        for d, count in zip(table.depths, counts):
            assert count == 2 * 2 ** (d + 2) + 1
        assert all(b > a for a, b in zip(counts, counts[1:]))

    def test_span_covers_zero(self, table):
        """Offsets increase strictly and straddle zero."""
        for d in table.depths:
            offsets = table.value_tables[d][:, 0]
            assert offsets[0] <= 0.0 <= offsets[-1]
            assert torch.all(offsets[1:] > offsets[:-1])
            assert table.overlap(d, 0.0) == pytest.approx(0.75)

    def test_symmetric_span_origin(self, table):
        """Tables run from -1 to 1 with offset 0 at row 2^(d+2)."""
        for d in table.depths:
            offsets = table.value_tables[d][:, 0]
            assert offsets[0].item() == -1.0
            assert offsets[-1].item() == 1.0
            assert offsets[table.resolution(d)].item() == 0.0
            assert table.overlap(d, -1.0) == 0.0
            assert table.overlap(d, 1.0) == 0.0

    def test_physical_scaling(self, table):
        """Values and derivatives are expressed in the physical offset."""
        d = 4
        w = 2.0 ** -d
        assert table.overlap(d, 0.5 * w) == pytest.approx(0.5)
        assert table.overlap(d, w) == pytest.approx(0.125)
        assert table.overlap(d, 0.0, 'derivative') == 0.0
        assert table.overlap(d, 0.5 * w, 'derivative') == pytest.approx(-1.0 / w)
        assert table.overlap(d, 0.0, 'second_derivative') == pytest.approx(-2.0 / w ** 2)

    def test_zero_beyond_support(self, table):
        """Offsets past the support radius read exactly zero."""
        d = 3
        radius = table.support_radius(d)
        assert radius == pytest.approx(1.5 * 2.0 ** -d)
        assert table.overlap(d, radius) == 0.0
        assert table.overlap(d, radius + 0.1) == 0.0

    def test_out_of_range_lookup(self, table):
        """Offsets off the table report no overlap."""
        assert table.overlap(3, 1.2) is None
        assert table.overlap(3, -5.0, 'derivative') is None

        offsets = torch.tensor([-2.0, 0.0, 2.0], dtype=torch.float64)
        values, valid = table.lookup(3, offsets)
        assert valid.tolist() == [False, True, False]
        assert values[0] == 0.0 and values[2] == 0.0

    def test_unknown_kind(self, table):
        with pytest.raises(ValueError):
            table.lookup(3, torch.zeros(1), 'curvature')
        with pytest.raises(ValueError):
            table.lookup(9, torch.zeros(1))

    def test_exact_evaluation_between_rows(self, table):
        """exact=True follows the B-spline at offsets between table rows."""
        d = 3
        w = 2.0 ** -d
        step = 1.0 / table.resolution(d)
        offsets = torch.tensor([[0.5 * step, 0.0], [1.5 * step, -2.5 * step]], dtype=torch.float64)
        expected = 4.0 ** d * bspline(offsets[:, 0] / w, 2) * bspline(offsets[:, 1] / w, 2)
        assert torch.allclose(table.evaluate(d, offsets, exact=True), expected, rtol=1e-12)

        on_grid = torch.tensor([[step, -3 * step]], dtype=torch.float64)
        assert table.evaluate(d, on_grid, exact=True).item() == pytest.approx(
            table.evaluate(d, on_grid).item(), rel=1e-12)

    def test_evaluate_volume_factor(self, table):
        """Normalized basis at its center is 2^(k d) M_2(0)^k."""
        d = 3
        zero2 = torch.zeros(1, 2, dtype=torch.float64)
        zero3 = torch.zeros(1, 3, dtype=torch.float64)
        assert table.evaluate(d, zero2).item() == pytest.approx(4.0 ** d * 0.75 ** 2)
        assert table.evaluate(d, zero3).item() == pytest.approx(8.0 ** d * 0.75 ** 3)
        assert table.evaluate(d, zero2, derivative_axis=0).item() == 0.0


class TestProductTables:
    """Test overlap integral tables."""

    @pytest.fixture
    def table(self):
        return BasisTable(degree=2, min_depth=3, max_depth=5)

    def test_same_depth_exact_values(self, table):
        """Autocorrelation of M_2 is M_5: known values at 0 and ±w."""
        for d in table.depths:
            w = 2.0 ** -d
            t = torch.tensor([0.0, w, -w], dtype=torch.float64)
            vv, _ = table.lookup_product(d, d, t, 'value_value')
            vd, _ = table.lookup_product(d, d, t, 'value_derivative')
            dd, _ = table.lookup_product(d, d, t, 'derivative_derivative')

            assert vv[0].item() == pytest.approx(0.55 * w, rel=1e-12)
            assert vv[1].item() == pytest.approx(26.0 / 120.0 * w, rel=1e-12)
            assert vd[0].item() == pytest.approx(0.0, abs=1e-12)
            assert dd[0].item() == pytest.approx(1.0 / w, rel=1e-12)
            assert dd[1].item() == pytest.approx(-1.0 / (3.0 * w), rel=1e-12)

    def test_cross_depth_against_quadrature(self, table):
        """Mixed-depth overlaps match a dense trapezoid integration."""
        da, db = 3, 5
        t = 3 * 2.0 ** -(db + 2)
        y = torch.linspace(-1.0, 1.0, 400001, dtype=torch.float64)

        ga = bspline(y / 2.0 ** -da, 2)
        gb = bspline((y + t) / 2.0 ** -db, 2)
        dga = bspline_derivative(y / 2.0 ** -da, 2) / 2.0 ** -da
        dgb = bspline_derivative((y + t) / 2.0 ** -db, 2) / 2.0 ** -db

        offsets = torch.tensor([t], dtype=torch.float64)
        vv, _ = table.lookup_product(da, db, offsets, 'value_value')
        vd, _ = table.lookup_product(da, db, offsets, 'value_derivative')
        dd, _ = table.lookup_product(da, db, offsets, 'derivative_derivative')

        assert vv.item() == pytest.approx(torch.trapezoid(ga * gb, y).item(), rel=1e-6)
        assert vd.item() == pytest.approx(torch.trapezoid(ga * dgb, y).item(), rel=1e-5, abs=1e-8)
        assert dd.item() == pytest.approx(torch.trapezoid(dga * dgb, y).item(), rel=1e-5)

    def test_symmetry(self, table):
        """Parity of values and P_ab(t) = P_ba(-t) for the products."""
        results = verify_table_symmetry(table)
        print(results)
        assert results['value_error'] < 1e-12
        assert results['derivative_error'] < 1e-10
        assert results['product_error'] < 1e-12

    def test_disjoint_supports(self, table):
        """No overlap once the offset reaches the sum of support radii."""
        d = 4
        reach = 2 * table.support_radius(d)
        t = torch.tensor([reach, reach + 0.05, -reach], dtype=torch.float64)
        for kind in ('value_value', 'value_derivative', 'derivative_derivative'):
            values, valid = table.lookup_product(d, d, t, kind)
            assert torch.all(valid)
            assert torch.all(values == 0)


class TestTableConfiguration:
    """Test construction errors and caching."""

    def test_reversed_depths(self):
        with pytest.raises(ConfigurationError):
            BasisTable(degree=2, min_depth=5, max_depth=3)

    def test_degree_zero_rejected(self):
        with pytest.raises(ConfigurationError):
            BasisTable(degree=0, min_depth=2, max_depth=3)

    def test_cached_table_is_shared(self):
        first = get_basis_table(2, 2, 4)
        second = get_basis_table(2, 2, 4)
        other = get_basis_table(2, 2, 5)
        assert first is second
        assert first is not other
        assert first.covers(3, 4) and not first.covers(1, 4)


if __name__ == '__main__':
    pytest.main([__file__, '-v', '--tb=short'])
