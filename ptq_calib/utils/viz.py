import plotly.express as px
import pandas as pd


def export_range_chart(ranges, path: str):
    if not ranges:
        with open(path, "w") as f:
            f.write("<h1>Calibration Ranges</h1><p>No data to display.</p>")
        return

    df = pd.DataFrame(ranges)
    # Ensure numeric types for range columns, coercing errors
    df['min'] = pd.to_numeric(df['min'], errors='coerce')
    df['max'] = pd.to_numeric(df['max'], errors='coerce')
    df = df.dropna(subset=['min', 'max'])

    df['span'] = df['max'] - df['min']

    hover_data_cols = ['id', 'min', 'max', 'method', 'num_samples']
    existing_hover_cols = [c for c in hover_data_cols if c in df.columns]

    fig = px.bar(
        df,
        x="span",
        y="node",
        base="min",
        orientation="h",
        hover_name="node",
        hover_data=existing_hover_cols,
        title="Calibrated Activation Ranges",
        labels={"node": "Aggregator Node", "span": "Range"}
    )

    fig.update_yaxes(autorange="reversed", title="Aggregator")
    fig.update_xaxes(title="Value")
    fig.update_layout(
        height=max(400, len(df) * 25),
        font=dict(family="Courier New, monospace", size=12),
    )

    fig.write_html(path, include_plotlyjs="cdn", full_html=True)


def export_range_ascii(ranges, width: int = 60):
    if not ranges:
        return "No calibration ranges."

    lo = min(r['min'] for r in ranges)
    hi = max(r['max'] for r in ranges)
    scale = (width - 1) / (hi - lo) if hi > lo else 0.0

    name_width = max(len(r['node']) for r in ranges)
    chart = "Calibrated Activation Ranges (ASCII)\n"
    chart += "-" * (name_width + width + 3) + "\n"

    for r in ranges:
        lane = [' '] * width
        start = int((r['min'] - lo) * scale)
        end = int((r['max'] - lo) * scale)
        for i in range(start, end + 1):
            lane[i] = '='
        lane[start] = '['
        lane[end] = ']'
        chart += f"{r['node']:>{name_width}} |" + "".join(lane) + "|\n"

    chart += "-" * (name_width + width + 3) + "\n"
    chart += f"{'':>{name_width}}  {lo:<.4g}{' ' * max(1, width - 16)}{hi:>.4g}\n"
    return chart
