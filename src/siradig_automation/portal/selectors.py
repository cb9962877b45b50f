from __future__ import annotations

from dataclasses import dataclass


# Bump whenever a selector below changes so run logs can be matched to the markup they targeted.
SELECTORS_VERSION = "2025.1"


@dataclass(frozen=True)
class PortalSelectors:
    """
    ARCA (ex AFIP) and SiRADIG are web portals; selectors may change over time.
    Keep all UI selectors/text hooks here for easy maintenance.

    JSF ids contain ':' and must stay escaped (``#F1\\:username``).
    """

    # Login
    login_url: str = "https://auth.afip.gob.ar/contribuyente_/login.xhtml"
    # Still on the login page after submitting means the credentials were not accepted.
    login_url_marker: str = "login"
    cuit_input: str = "#F1\\:username"
    cuit_next_button: str = "#F1\\:btnSiguiente"
    password_input: str = "#F1\\:password"
    login_submit_button: str = "#F1\\:btnIngresar"
    login_error: str = ".alert-danger, .error-message"
    captcha: str = "#captcha, .g-recaptcha, [data-sitekey]"

    # Services directory
    services_url: str = "https://portalcf.cloud.afip.gob.ar/portal/app/"
    application_link: str = (
        "a:has-text('SiRADIG - Trabajador'), a[href*='siradig'], a[title*='SiRADIG']"
    )
    service_search_input: str = "#buscadorInput"
    application_search_text: str = "SiRADIG"

    # SiRADIG navigation (every step is optional; the portal skips some of them)
    person_button: str = "input.btn_empresa"
    period_select: str = "select[name*='periodo'], select#periodo"
    continue_button: str = "text=Continuar"
    draft_reminder_accept: str = "button:has-text('Aceptar')"
    new_draft_button: str = "#btn_nuevo_borrador"
    form_load_button: str = "#btn_carga"
    deductions_section: str = "text=Deducciones y desgravaciones"

    # Deduction form
    add_deduction_toggle: str = "#btn_agregar_deducciones"
    category_menu: str = "#menu_deducciones"
    provider_cuit_input: str = "#numeroDoc"
    provider_name_input: str = "#razonSocial"
    month_select: str = "#mesDesde"
    add_receipt_button: str = "#btn_alta_comprobante"
    receipt_date_input: str = "#cmpFechaEmision"
    receipt_type_select: str = "#cmpTipo"
    receipt_point_of_sale_input: str = "#cmpPuntoVenta"
    receipt_number_input: str = "#cmpNumero"
    receipt_amount_input: str = "#cmpMontoFacturado"
    receipt_refunded_input: str = "#cmpMontoReintegrado"
    receipt_add_button: str = ".ui-dialog-buttonset button:has-text('Agregar')"

    # Submit
    save_button: str = "#btn_guardar"
    confirm_modal_button: str = "button:has-text('Confirmar'), button:has-text('Aceptar')"
    success_banner: str = "#div_listado, .alert-success, .mensaje-exito"
    error_banner: str = ".formErrorContent, .alert-danger, .mensaje-error"

    def category_option(self, label: str) -> str:
        """Exact-text link inside the category menu (several labels share prefixes)."""
        escaped = label.replace('"', '\\"')
        return f'{self.category_menu} a:text-is("{escaped}")'
