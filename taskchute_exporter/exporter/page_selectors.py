# File: exporter/page_selectors.py
# TaskChute Cloud renders with MUI; skeletons mark panels still loading.
SKELETON_SELECTORS = (".MuiSkeleton-root",)

# Signed-in marker used by the interactive login.
SIGNED_IN_MARKER = "header"

# Date inputs are found by scanning every input and keeping those whose
# placeholder, type or current value looks like a date.
DATE_INPUT_VALUE_SCAN = "input"

# Export control, most specific first.
DOWNLOAD_BUTTON_SELECTORS = (
    'button:has([data-testid="FileDownloadIcon"])',
    'button.MuiButton-root:has-text("ダウンロード")',
    'button:has-text("ダウンロード")',
    'button:has-text("Download")',
    'button:has(svg[data-testid="FileDownloadIcon"])',
)

# Neutral corner clicked to close popovers left open by the date pickers.
NEUTRAL_CLICK_POSITION = (10, 10)
