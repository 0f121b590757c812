import base64
import unittest
from datetime import datetime
from io import BytesIO

from PIL import Image

import precoposto


def image_bytes(image_format: str = "PNG") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (4, 4), color=(200, 30, 30)).save(buffer, format=image_format)
    return buffer.getvalue()


def build_entity(
    entity_id: str,
    name: str,
    value: str = "5,49",
    *,
    no_change: bool = False,
    with_photo: bool = True,
) -> precoposto.EntityForm:
    prices = precoposto.empty_price_set()
    for method in precoposto.PAYMENT_METHODS:
        for fuel in precoposto.FUEL_TYPES:
            prices[method][fuel] = value
    photo = precoposto.PhotoFieldState()
    if with_photo:
        photo = precoposto.PhotoFieldState(data_uri="data:image/png;base64,QUJD", file_name="placa.png")
    return precoposto.EntityForm(id=entity_id, name=name, prices=prices, no_change=no_change, photo=photo)


def build_form(*competitors: precoposto.EntityForm, station: precoposto.EntityForm | None = None):
    return precoposto.FormState(
        station=station or build_entity("posto-natureza-5", "Posto Natureza 5"),
        competitors=list(competitors),
    )


def build_submission(form: precoposto.FormState) -> precoposto.Submission:
    return precoposto.build_submission(
        form,
        manager_id="João Silva",
        station_id="posto-natureza-5",
        period="Manhã",
        submitted_at=datetime(2026, 3, 9, 7, 5),
    )


class PriceMaskTests(unittest.TestCase):
    def test_mask_inserts_comma_after_first_digit(self) -> None:
        self.assertEqual(precoposto.apply_price_mask("549"), "5,49")
        self.assertEqual(precoposto.apply_price_mask("54"), "5,4")
        self.assertEqual(precoposto.apply_price_mask("5"), "5")
        self.assertEqual(precoposto.apply_price_mask(""), "")

    def test_mask_strips_non_digits_and_truncates(self) -> None:
        self.assertEqual(precoposto.apply_price_mask("R$ 5.49"), "5,49")
        self.assertEqual(precoposto.apply_price_mask("5,4999"), "5,49")
        self.assertEqual(precoposto.apply_price_mask("abc"), "")

    def test_mask_keeps_no_data_sentinel(self) -> None:
        self.assertEqual(precoposto.apply_price_mask(precoposto.NO_DATA), precoposto.NO_DATA)

    def test_mask_output_always_matches_price_format(self) -> None:
        samples = ["", "1", "12", "123", "1234", "9,9", "0,0,0", "x7y8z9", " 6 1 9 ", "12345678"]
        for sample in samples:
            masked = precoposto.apply_price_mask(sample)
            self.assertTrue(precoposto.is_price_value_valid(masked), msg=f"{sample!r} -> {masked!r}")
            self.assertEqual(precoposto.apply_price_mask(masked), masked)

    def test_normalize_price_value_formats_numbers(self) -> None:
        self.assertEqual(precoposto.normalize_price_value(5.49), "5,49")
        self.assertEqual(precoposto.normalize_price_value(6), "6,00")
        self.assertEqual(precoposto.normalize_price_value(None), "")
        self.assertEqual(precoposto.normalize_price_value(" Sem dados "), precoposto.NO_DATA)


class ValidationTests(unittest.TestCase):
    def test_no_change_station_without_photo_passes(self) -> None:
        station = build_entity("posto-natureza-5", "Posto Natureza 5", "", no_change=True, with_photo=False)
        form = build_form(build_entity("concorrente-5-1", "Shell"), station=station)

        self.assertEqual(precoposto.validate_form_state(form), {})

    def test_missing_price_reports_exactly_that_field(self) -> None:
        competitor = build_entity("concorrente-5-1", "Shell")
        competitor.prices["vista"]["gasolinaComum"] = ""
        form = build_form(competitor)

        errors = precoposto.validate_form_state(form)

        self.assertEqual(list(errors), ["competitors.0.prices.vista.gasolinaComum"])
        self.assertEqual(errors["competitors.0.prices.vista.gasolinaComum"], precoposto.REQUIRED_FIELD_MESSAGE)

    def test_no_data_sentinel_satisfies_required_field(self) -> None:
        competitor = build_entity("concorrente-5-1", "Shell")
        competitor.prices["prazo"]["dieselS10"] = precoposto.NO_DATA

        self.assertEqual(precoposto.validate_form_state(build_form(competitor)), {})

    def test_missing_photo_is_scoped_to_entity(self) -> None:
        station = build_entity("posto-natureza-5", "Posto Natureza 5", with_photo=False)
        competitor = build_entity("concorrente-5-2", "Ipiranga", with_photo=False)

        errors = precoposto.validate_form_state(build_form(competitor, station=station))

        self.assertEqual(set(errors), {"stationPhoto", "competitors.0.photo"})

    def test_all_violations_are_collected(self) -> None:
        station = build_entity("posto-natureza-5", "Posto Natureza 5", "", with_photo=False)

        errors = precoposto.validate_form_state(build_form(station=station))

        self.assertEqual(len(errors), 1 + len(precoposto.PAYMENT_METHODS) * len(precoposto.FUEL_TYPES))

    def test_malformed_price_is_rejected(self) -> None:
        competitor = build_entity("concorrente-5-1", "Shell")
        competitor.prices["vista"]["etanol"] = "549"

        errors = precoposto.validate_form_state(build_form(competitor))

        self.assertEqual(errors, {"competitors.0.prices.vista.etanol": precoposto.INVALID_PRICE_MESSAGE})

    def test_photo_always_required_applies_to_no_change_entities(self) -> None:
        station = build_entity("posto-natureza-5", "Posto Natureza 5", "", no_change=True, with_photo=False)
        form = build_form(station=station)

        self.assertEqual(precoposto.validate_form_state(form), {})
        errors = precoposto.validate_form_state(form, photo_always_required=True)
        self.assertEqual(list(errors), ["stationPhoto"])

    def test_duplicate_and_blank_names_are_rejected(self) -> None:
        form = build_form(
            build_entity("concorrente-5-1", "Shell"),
            build_entity("concorrente-5-2", " shell "),
            build_entity("concorrente-5-3", "  "),
        )

        errors = precoposto.validate_form_state(form)

        self.assertEqual(errors["competitors.1.name"], precoposto.DUPLICATE_NAME_MESSAGE)
        self.assertEqual(errors["competitors.2.name"], precoposto.REQUIRED_NAME_MESSAGE)
        self.assertNotIn("competitors.0.name", errors)


class FlattenTests(unittest.TestCase):
    def test_flatten_writes_header_keys(self) -> None:
        payload = precoposto.flatten_submission(build_submission(build_form()))

        self.assertEqual(payload["Data"], "09/03/2026")
        self.assertEqual(payload["Hora"], "07:05")
        self.assertEqual(payload["Período"], "Manhã")
        self.assertEqual(payload["Gerente"], "João Silva")
        self.assertEqual(payload["Posto"], "Posto Natureza 5")

    def test_flatten_converts_decimal_comma_and_keeps_no_data(self) -> None:
        competitor = build_entity("concorrente-5-1", "Shell")
        competitor.prices["vista"]["etanol"] = precoposto.NO_DATA

        payload = precoposto.flatten_submission(build_submission(build_form(competitor)))

        self.assertEqual(payload["(Shell) À Vista/Etanol"], "Sem dados")
        self.assertEqual(payload["(Shell) A Prazo/Diesel S-10"], "5.49")
        self.assertEqual(payload["(Shell) Sem alteração"], "NÃO")
        self.assertEqual(payload["(Shell) Foto"], "QUJD")

    def test_flatten_omits_prices_of_unchanged_entities(self) -> None:
        station = build_entity("posto-natureza-5", "Posto Natureza 5", no_change=True)

        payload = precoposto.flatten_submission(build_submission(build_form(station=station)))

        self.assertEqual(payload["(Posto Natureza 5) Sem alteração"], "SIM")
        self.assertIn("(Posto Natureza 5) Foto", payload)
        self.assertFalse(any("/" in key for key in payload if key.startswith("(Posto Natureza 5)")))

    def test_flatten_adds_coordinates_when_photo_has_location(self) -> None:
        competitor = build_entity("concorrente-5-1", "Shell")
        competitor.photo.latitude = -23.55052
        competitor.photo.longitude = -46.633308

        payload = precoposto.flatten_submission(build_submission(build_form(competitor)))

        self.assertEqual(payload["(Shell) Latitude"], "-23.550520")
        self.assertEqual(payload["(Shell) Longitude"], "-46.633308")
        self.assertNotIn("(Posto Natureza 5) Latitude", payload)

    def test_unflatten_recovers_submitted_prices(self) -> None:
        competitor = build_entity("concorrente-5-1", "Shell", "6,19")
        competitor.prices["prazo"]["gasolinaAditivada"] = precoposto.NO_DATA
        unchanged = build_entity("concorrente-5-2", "Ipiranga", no_change=True)
        form = build_form(competitor, unchanged)

        payload = precoposto.flatten_submission(build_submission(form))
        recovered = precoposto.unflatten_prices(payload, ["Posto Natureza 5", "Shell", "Ipiranga"])

        self.assertNotIn("Ipiranga", recovered)
        self.assertEqual(recovered["Shell"]["prazo"]["gasolinaAditivada"], "Sem dados")
        self.assertEqual(recovered["Shell"]["vista"]["etanol"], "6.19")
        self.assertEqual(recovered["Posto Natureza 5"]["vista"]["dieselS10"], "5.49")

    def test_submission_is_detached_from_form(self) -> None:
        form = build_form(build_entity("concorrente-5-1", "Shell"))
        submission = build_submission(form)

        form.competitors[0].prices["vista"]["etanol"] = "9,99"

        self.assertEqual(submission.competitors[0].prices["vista"]["etanol"], "5,49")

    def test_payload_frame_hides_photo_bytes(self) -> None:
        payload = precoposto.flatten_submission(build_submission(build_form()))

        frame = precoposto.build_payload_frame(payload)

        self.assertEqual(list(frame.columns), ["Campo", "Valor"])
        self.assertEqual(len(frame), len(payload))
        photo_row = frame[frame["Campo"] == "(Posto Natureza 5) Foto"].iloc[0]
        self.assertTrue(photo_row["Valor"].startswith("<imagem base64"))


class PhotoCaptureTests(unittest.TestCase):
    def test_upload_becomes_data_uri(self) -> None:
        jpeg = image_bytes("JPEG")

        photo = precoposto.photo_record_from_upload("fotos/placa.JPG", "image/jpeg", jpeg)

        self.assertEqual(photo.data_uri, "data:image/jpeg;base64," + base64.b64encode(jpeg).decode("ascii"))
        self.assertEqual(photo.file_name, "placa.JPG")
        self.assertFalse(photo.has_location)
        self.assertEqual(precoposto.photo_bytes(photo), jpeg)

    def test_mime_type_falls_back_to_extension(self) -> None:
        photo = precoposto.photo_record_from_upload("placa.png", None, image_bytes(), location=(-23.5, -46.6))

        self.assertTrue(photo.data_uri.startswith("data:image/png;base64,"))
        self.assertEqual((photo.latitude, photo.longitude), (-23.5, -46.6))

    def test_rejects_unsupported_or_oversized_files(self) -> None:
        with self.assertRaises(ValueError):
            precoposto.photo_record_from_upload("placa.gif", "image/gif", b"abc")
        with self.assertRaises(ValueError):
            precoposto.photo_record_from_upload("placa.jpg", "image/jpeg", b"")
        with self.assertRaises(ValueError):
            precoposto.photo_record_from_upload(
                "placa.jpg", "image/jpeg", b"0" * (precoposto.MAX_PHOTO_BYTES + 1)
            )

    def test_rejects_bytes_that_are_not_an_image(self) -> None:
        with self.assertRaises(ValueError):
            precoposto.photo_record_from_upload("placa.png", "image/png", b"not really a png")

    def test_location_params_are_parsed_and_bounded(self) -> None:
        self.assertEqual(precoposto.parse_location_params("-23.5", "-46.6"), (-23.5, -46.6))
        self.assertIsNone(precoposto.parse_location_params("", "-46.6"))
        self.assertIsNone(precoposto.parse_location_params("abc", "1"))
        self.assertIsNone(precoposto.parse_location_params("95", "0"))

    def test_clear_form_photos_keeps_prices(self) -> None:
        form = build_form(build_entity("concorrente-5-1", "Shell"))

        precoposto.clear_form_photos(form)

        self.assertTrue(all(entity.photo.is_empty for _, entity in form.entities()))
        self.assertEqual(form.competitors[0].prices["vista"]["etanol"], "5,49")


class StationConfigTests(unittest.TestCase):
    def test_roster_is_trimmed_and_padded(self) -> None:
        station = precoposto.find_station("posto-natureza-5")

        self.assertEqual([item.name for item in precoposto.build_competitor_roster(station, 2)], ["Shell", "Ipiranga"])
        padded = precoposto.build_competitor_roster(station, 7)
        self.assertEqual(len(padded), 7)
        self.assertEqual(padded[5].name, "Concorrente 6")
        self.assertEqual(padded[6].id, "posto-natureza-5-extra-7")

    def test_roster_count_is_bounded_and_overrides_apply(self) -> None:
        station = precoposto.find_station("posto-natureza-3")

        self.assertEqual(len(precoposto.build_competitor_roster(station, 0)), 1)
        self.assertEqual(len(precoposto.build_competitor_roster(station, 42)), precoposto.MAX_COMPETITOR_COUNT)
        self.assertEqual(len(precoposto.build_competitor_roster(station, "abc")), precoposto.DEFAULT_COMPETITOR_COUNT)

        roster = precoposto.build_competitor_roster(station, 2, {"concorrente-3-2": "Posto Beira Rio"})
        self.assertEqual([item.name for item in roster], ["Competidor Alpha", "Posto Beira Rio"])

    def test_unknown_station_is_not_found(self) -> None:
        self.assertIsNone(precoposto.find_station("posto-inexistente"))
        self.assertEqual(len(precoposto.STATIONS), 5)


if __name__ == "__main__":
    unittest.main()
